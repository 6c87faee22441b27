"""Configuration handling for the enrichment analysis."""

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import tomli
import tomli_w

from pathgsea.errors import InsufficientPermutationsError

RANK_METHODS = ("signal2noise", "t_test", "diff_abundance", "log2_ratio")

# User-facing method names mapped onto statsmodels multipletests methods
P_ADJUST_METHODS = {
    "BH": "fdr_bh",
    "BY": "fdr_by",
    "Bonferroni": "bonferroni",
    "none": None,
}

COMPARISON_MODES = ("venn", "upset")

# Fixed so that a run without an explicit seed is still reproducible
DEFAULT_SEED = 42


@dataclass(frozen=True)
class GSEAConfig:
    """Immutable set of options controlling one enrichment analysis.

    Attributes:
        group_column: Metadata column holding the two-level grouping
        sample_column: Metadata column holding sample identifiers
        feature_column: Abundance column holding feature identifiers
        groups: Optional (test, reference) pair fixing the contrast direction
        rank_method: One of signal2noise, t_test, diff_abundance, log2_ratio
        min_size: Smallest testable pathway size (members in the matrix)
        max_size: Largest testable pathway size
        nperm: Number of phenotype permutations
        p_adjust_method: One of BH, BY, Bonferroni, none
        weight_exponent: Exponent applied to |score| for hits (0 = unweighted)
        seed: Seed of the permutation generator
        n_workers: Worker processes used for permutations
        chunk_size: Permutation rounds per task, None picks a size from nperm
        p_threshold: Adjusted p-value cutoff used by the comparison engine
        comparison_mode: venn (pairwise sets) or upset (multi-set summary)
        progress: Show a progress bar while permuting
    """

    group_column: str = "group"
    sample_column: str = "sample"
    feature_column: str = "feature_id"
    groups: Optional[Tuple[str, str]] = None
    rank_method: str = "signal2noise"
    min_size: int = 15
    max_size: int = 500
    nperm: int = 1000
    p_adjust_method: str = "BH"
    weight_exponent: float = 1.0
    seed: int = DEFAULT_SEED
    n_workers: int = 1
    chunk_size: Optional[int] = None
    p_threshold: float = 0.05
    comparison_mode: str = "venn"
    progress: bool = False

    def __post_init__(self):
        if self.groups is not None:
            groups = tuple(str(g) for g in self.groups)
            if len(groups) != 2 or groups[0] == groups[1]:
                raise ValueError(f"groups must name two distinct labels, got {self.groups!r}")
            # Lists coming from TOML are normalised to a hashable tuple
            object.__setattr__(self, "groups", groups)

        if self.rank_method not in RANK_METHODS:
            raise ValueError(
                f"Unknown rank method: {self.rank_method}. "
                f"Expected one of: {', '.join(RANK_METHODS)}"
            )
        if self.p_adjust_method not in P_ADJUST_METHODS:
            raise ValueError(
                f"Unknown p-value adjustment method: {self.p_adjust_method}. "
                f"Expected one of: {', '.join(P_ADJUST_METHODS)}"
            )
        if self.comparison_mode not in COMPARISON_MODES:
            raise ValueError(f"Unknown comparison mode: {self.comparison_mode}")

        if self.min_size < 1:
            raise ValueError("min_size must be at least 1")
        if self.max_size < self.min_size:
            raise ValueError(f"max_size ({self.max_size}) is smaller than min_size ({self.min_size})")
        if self.nperm < 1:
            raise InsufficientPermutationsError(f"nperm must be at least 1, got {self.nperm}")
        if self.weight_exponent < 0:
            raise ValueError("weight_exponent cannot be negative")
        if self.seed is None or self.seed < 0:
            raise ValueError("seed must be a non-negative integer")
        if self.n_workers < 1:
            raise ValueError("n_workers must be at least 1")
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if not 0 < self.p_threshold <= 1:
            raise ValueError("p_threshold must be in (0, 1]")

    def replace(self, **changes) -> "GSEAConfig":
        """Return a validated copy with some options changed."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "GSEAConfig":
        """Build a configuration from a plain mapping, e.g. a TOML table.

        Args:
            values: Option names mapped to values

        Returns:
            Validated configuration
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown analysis options: {', '.join(unknown)}")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Return the options as a TOML-serialisable mapping."""
        values = dataclasses.asdict(self)
        # TOML has no null; unset optionals are simply omitted
        return {k: (list(v) if isinstance(v, tuple) else v) for k, v in values.items() if v is not None}


class PipelineConfig:
    """Configuration of the file-driven pipeline, read from a TOML file."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except tomli.TOMLDecodeError as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['abundance_file', 'metadata_file', 'pathway_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})

        # [permutation] and [comparison] are optional groupings of analysis options
        options = dict(self.config.get("analysis", {}))
        options.update(self.config.get("permutation", {}))
        options.update(self.config.get("comparison", {}))
        self.analysis = GSEAConfig.from_dict(options)

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        base_path = Path(self.output_config.get("output_dir", "results"))
        if subdir:
            return base_path / subdir
        return base_path

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
