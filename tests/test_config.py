"""Tests for configuration management."""

import dataclasses

import pytest
import tomli
from tomli_w import dump as tomli_w_dump

from pathgsea.config import GSEAConfig, PipelineConfig
from pathgsea.errors import InsufficientPermutationsError


@pytest.fixture
def minimal_config_file(tmp_path):
    """Create a minimal valid configuration file."""
    config = {
        'input': {
            'abundance_file': 'abundance.tsv',
            'metadata_file': 'metadata.tsv',
            'pathway_file': 'pathways.gmt'
        },
        'output': {
            'output_dir': 'results'
        },
        'analysis': {
            'group_column': 'condition'
        }
    }
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)
    return config_path


@pytest.fixture
def full_config_file(tmp_path):
    """Create a configuration file with all optional sections."""
    config = {
        'input': {
            'abundance_file': 'abundance.tsv',
            'metadata_file': 'metadata.tsv',
            'pathway_file': 'pathways.tsv',
            'annotation_file': 'names.tsv',
            'daa_file': 'daa.tsv',
            'daa_id_column': 'feature'
        },
        'output': {
            'output_dir': 'out'
        },
        'analysis': {
            'group_column': 'condition',
            'groups': ['case', 'control'],
            'rank_method': 't_test',
            'min_size': 5,
            'max_size': 200,
            'p_adjust_method': 'BY'
        },
        'permutation': {
            'nperm': 250,
            'seed': 7,
            'n_workers': 2
        },
        'comparison': {
            'p_threshold': 0.1,
            'comparison_mode': 'upset'
        }
    }
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)
    return config_path


def test_default_config():
    """Test the default analysis options."""
    config = GSEAConfig()
    assert config.rank_method == 'signal2noise'
    assert config.min_size == 15
    assert config.max_size == 500
    assert config.nperm == 1000
    assert config.p_adjust_method == 'BH'
    assert config.weight_exponent == 1.0
    assert config.seed == 42
    assert config.n_workers == 1
    assert config.p_threshold == 0.05
    assert config.comparison_mode == 'venn'
    assert config.groups is None


def test_config_is_frozen():
    """Test that options cannot be changed in place."""
    config = GSEAConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.nperm = 10


def test_replace_validates():
    """Test that replace returns a new validated config."""
    config = GSEAConfig()
    updated = config.replace(nperm=50, rank_method='log2_ratio')
    assert updated.nperm == 50
    assert updated.rank_method == 'log2_ratio'
    assert config.nperm == 1000

    with pytest.raises(ValueError, match="Unknown rank method"):
        config.replace(rank_method='ratio')


@pytest.mark.parametrize("changes,message", [
    ({'rank_method': 'foo'}, "Unknown rank method"),
    ({'p_adjust_method': 'holm'}, "Unknown p-value adjustment method"),
    ({'comparison_mode': 'euler'}, "Unknown comparison mode"),
    ({'min_size': 0}, "min_size"),
    ({'min_size': 20, 'max_size': 10}, "max_size"),
    ({'weight_exponent': -1.0}, "weight_exponent"),
    ({'n_workers': 0}, "n_workers"),
    ({'chunk_size': 0}, "chunk_size"),
    ({'p_threshold': 0.0}, "p_threshold"),
    ({'groups': ('a', 'a')}, "groups"),
    ({'groups': ('a', 'b', 'c')}, "groups"),
])
def test_invalid_options(changes, message):
    """Test validation of individual options."""
    with pytest.raises(ValueError, match=message):
        GSEAConfig(**changes)


def test_invalid_nperm():
    """Test that fewer than one permutation raises the dedicated error."""
    with pytest.raises(InsufficientPermutationsError):
        GSEAConfig(nperm=0)


def test_groups_normalised_to_tuple():
    """Test that list groups (as read from TOML) become a tuple."""
    config = GSEAConfig(groups=['case', 'control'])
    assert config.groups == ('case', 'control')


def test_from_dict_rejects_unknown_keys():
    """Test that misspelt option names are reported."""
    with pytest.raises(ValueError, match="Unknown analysis options: npem"):
        GSEAConfig.from_dict({'npem': 10})


def test_to_dict_round_trip():
    """Test that to_dict output rebuilds the same config."""
    config = GSEAConfig(groups=('b', 'a'), nperm=10)
    values = config.to_dict()
    assert values['groups'] == ['b', 'a']
    assert 'chunk_size' not in values
    assert GSEAConfig.from_dict(values) == config


def test_load_minimal_config(minimal_config_file):
    """Test loading a minimal valid configuration."""
    config = PipelineConfig(minimal_config_file)
    assert 'annotation_file' not in config.input_files
    assert config.analysis.group_column == 'condition'
    assert config.analysis.nperm == 1000


def test_load_full_config(full_config_file):
    """Test that optional sections are folded into the analysis options."""
    config = PipelineConfig(full_config_file)
    analysis = config.analysis
    assert config.input_files['daa_id_column'] == 'feature'
    assert analysis.groups == ('case', 'control')
    assert analysis.rank_method == 't_test'
    assert analysis.nperm == 250
    assert analysis.seed == 7
    assert analysis.n_workers == 2
    assert analysis.p_threshold == 0.1
    assert analysis.comparison_mode == 'upset'


def test_save_config(minimal_config_file, tmp_path):
    """Test saving configuration to a new file."""
    config = PipelineConfig(minimal_config_file)
    output_path = tmp_path / 'saved_config.toml'
    config.save_config(output_path)

    with open(output_path, 'rb') as f:
        saved_config = tomli.load(f)
    assert saved_config == config.config


def test_nonexistent_config_file():
    """Test error handling for nonexistent configuration file."""
    with pytest.raises(ValueError, match="Error loading configuration file"):
        PipelineConfig('nonexistent.toml')


def test_invalid_config_file(tmp_path):
    """Test error with invalid config file."""
    file_path = tmp_path / "config.toml"
    file_path.write_text("invalid toml content")

    with pytest.raises(ValueError, match="Error loading configuration file"):
        PipelineConfig(file_path)


def test_missing_required_section(tmp_path):
    """Test error handling for missing required section."""
    config = {
        'input': {
            'abundance_file': 'abundance.tsv',
            'metadata_file': 'metadata.tsv',
            'pathway_file': 'pathways.gmt'
        }
        # Missing 'output' and 'analysis' sections
    }
    config_path = tmp_path / 'invalid_config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)

    with pytest.raises(ValueError, match="Missing required sections"):
        PipelineConfig(config_path)


def test_missing_required_files(tmp_path):
    """Test error handling for missing required input files."""
    config = {
        'input': {
            'abundance_file': 'abundance.tsv'
        },
        'output': {
            'output_dir': 'results'
        },
        'analysis': {}
    }
    config_path = tmp_path / 'invalid_config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)

    with pytest.raises(ValueError, match="Missing required input files"):
        PipelineConfig(config_path)


def test_invalid_analysis_option(tmp_path):
    """Test that invalid analysis values surface when loading."""
    config = {
        'input': {
            'abundance_file': 'abundance.tsv',
            'metadata_file': 'metadata.tsv',
            'pathway_file': 'pathways.gmt'
        },
        'output': {},
        'analysis': {'rank_method': 'fold'}
    }
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)

    with pytest.raises(ValueError, match="Unknown rank method"):
        PipelineConfig(config_path)


def test_get_output_path(minimal_config_file):
    """Test getting output paths."""
    config = PipelineConfig(minimal_config_file)

    base_path = config.get_output_path()
    assert base_path.name == 'results'

    sub_path = config.get_output_path('data')
    assert sub_path.name == 'data'
    assert sub_path.parent.name == 'results'
