"""Tests for reconciling GSEA and DAA significance calls."""

import logging

import pytest
import polars as pl

from pathgsea.compare import DAAResult, compare, daa_results_from_frame
from pathgsea.stats import GSEAResult


def _gsea(pathway_id, p_adjust, nes=1.0):
    return GSEAResult(pathway_id, nes / 2, nes, p_adjust / 2, p_adjust, 10, ())


@pytest.fixture
def gsea_results():
    """GSEA results for P01-P10."""
    results = [_gsea(f"P{i:02d}", 0.01) for i in (1, 2, 3)]
    results.append(_gsea('P04', 0.5))
    results.append(_gsea('P05', 0.02, nes=2.0))
    results.append(_gsea('P06', 0.02, nes=-2.0))
    results.extend(_gsea(f"P{i:02d}", 0.3) for i in (7, 8, 9, 10))
    return results


@pytest.fixture
def daa_results():
    """DAA results for P05-P14."""
    rows = [
        ('P05', 0.001, 'up'),
        ('P06', 0.001, 'up'),
        ('P07', 0.6, 'down'),
        ('P08', 0.6, None),
        ('P09', 0.6, 1.3),
        ('P10', 0.6, -0.2),
        ('P11', 0.04, 'down'),
        ('P12', 0.04, 'up'),
        ('P13', 0.9, 'up'),
        ('P14', 0.9, 'down'),
    ]
    return [DAAResult(pid, p / 2, p, direction) for pid, p, direction in rows]


def test_compare_buckets(gsea_results, daa_results):
    """Test the four-way classification over the union of ids."""
    comparison = compare(gsea_results, daa_results, p_threshold=0.05)

    assert comparison.counts == {'both': 2, 'gsea_only': 3, 'daa_only': 2, 'neither': 7}
    assert sum(comparison.counts.values()) == 14
    assert len(comparison.classification) == 14
    assert comparison.classification['P05'] == 'both'
    assert comparison.classification['P01'] == 'gsea_only'
    assert comparison.classification['P11'] == 'daa_only'
    assert comparison.classification['P04'] == 'neither'
    assert comparison.classification['P13'] == 'neither'

    assert comparison.mode == 'venn'
    assert comparison.sets['GSEA'] == frozenset({'P01', 'P02', 'P03', 'P05', 'P06'})
    assert comparison.sets['DAA'] == frozenset({'P05', 'P06', 'P11', 'P12'})


def test_compare_records(gsea_results, daa_results):
    """Test the joined record table."""
    records = compare(gsea_results, daa_results).records

    assert records.height == 14
    assert records['pathway_id'].to_list() == sorted(records['pathway_id'].to_list())

    p01 = records.filter(pl.col('pathway_id') == 'P01').row(0, named=True)
    assert p01['gsea_tested'] is True
    assert p01['daa_tested'] is False
    assert p01['daa_p_adjust'] is None

    p12 = records.filter(pl.col('pathway_id') == 'P12').row(0, named=True)
    assert p12['gsea_tested'] is False
    assert p12['gsea_nes'] is None


def test_direction_agreement(gsea_results, daa_results):
    """Test agreement between NES sign and the DAA effect direction."""
    records = compare(gsea_results, daa_results).records
    agreement = dict(zip(records['pathway_id'].to_list(), records['direction_agreement'].to_list()))

    assert agreement['P05'] is True
    assert agreement['P06'] is False
    assert agreement['P07'] is False
    assert agreement['P08'] is None
    assert agreement['P09'] is True
    assert agreement['P10'] is False
    assert agreement['P01'] is None
    assert agreement['P11'] is None


def test_threshold_is_inclusive():
    """Test that p_adjust equal to the threshold counts as significant."""
    comparison = compare(
        [_gsea('map1', 0.05), _gsea('map2', 0.0501)],
        [DAAResult('map1', 0.01, 0.05, 'up'), DAAResult('map2', 0.01, 0.05, 'up')],
        p_threshold=0.05,
    )
    assert comparison.classification == {'map1': 'both', 'map2': 'daa_only'}


def test_no_overlap_warns(caplog):
    """Test that disjoint identifier schemes are reported."""
    with caplog.at_level(logging.WARNING, logger='pathgsea.compare'):
        comparison = compare(
            [_gsea('map00010', 0.01)],
            [DAAResult('K00001', 0.01, 0.01, 'up')],
        )

    assert "share no pathway ids" in caplog.text
    assert comparison.counts == {'both': 0, 'gsea_only': 1, 'daa_only': 1, 'neither': 0}


def test_duplicate_ids_raise(gsea_results):
    """Test that duplicated ids are rejected."""
    with pytest.raises(ValueError, match="Duplicate pathway ids in DAA"):
        compare(gsea_results, [DAAResult('P05', 0.1, 0.1), DAAResult('P05', 0.2, 0.2)])


def test_compare_from_frames(gsea_results):
    """Test DataFrame inputs with a custom DAA id column."""
    daa_frame = pl.DataFrame({
        'feature': ['P01', 'P04', 'P20'],
        'p_value': [0.001, 0.001, 0.5],
        'p_adjust': [0.01, 0.01, 0.9],
        'effect_direction': ['up', 'down', 'up'],
    })
    daa = daa_results_from_frame(daa_frame, id_column='feature')
    assert [r.pathway_id for r in daa] == ['P01', 'P04', 'P20']

    gsea_frame = pl.DataFrame({
        'pathway_id': [r.pathway_id for r in gsea_results],
        'nes': [r.nes for r in gsea_results],
        'p_adjust': [r.p_adjust for r in gsea_results],
    })
    comparison = compare(gsea_frame, daa)

    assert comparison.classification['P01'] == 'both'
    assert comparison.classification['P04'] == 'daa_only'
    assert comparison.classification['P20'] == 'neither'
    assert len(comparison.classification) == 11

    with pytest.raises(ValueError, match="missing columns"):
        daa_results_from_frame(daa_frame)


def test_upset_mode(gsea_results, daa_results):
    """Test the multi-set summary."""
    comparison = compare(gsea_results, daa_results, mode='upset')

    sets = comparison.sets
    assert isinstance(sets, pl.DataFrame)
    assert sets.columns == ['gsea_tested', 'daa_tested', 'gsea_significant', 'daa_significant', 'count']
    assert sets['count'].sum() == 14

    both = sets.filter(pl.col('gsea_significant') & pl.col('daa_significant'))
    assert both['count'].sum() == 2


def test_invalid_arguments(gsea_results, daa_results):
    """Test rejection of unknown modes and thresholds."""
    with pytest.raises(ValueError, match="Unknown comparison mode"):
        compare(gsea_results, daa_results, mode='euler')

    with pytest.raises(ValueError, match="p_threshold"):
        compare(gsea_results, daa_results, p_threshold=1.5)
