"""Master configuration for an accessibility analysis session.

All component parameters are configurable from a single YAML file.
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from .activity.config import ActivityConfig
from .clustering.config import ClusteringConfig
from .differential.config import DifferentialConfig
from .lsi.config import LSIConfig, NormalizationConfig
from .matrix.config import QCConfig
from .motifs.config import MotifConfig


@dataclass
class AnalysisConfig:
    """Master configuration for QC, embedding, clustering and scoring.

    Attributes
    ----------
    qc : QCConfig
        Cell QC and feature selection
    normalization : NormalizationConfig
        TF-IDF normalization
    lsi : LSIConfig
        Truncated SVD embedding
    clustering : ClusteringConfig
        SNN graph and modularity clustering
    activity : ActivityConfig
        Gene activity aggregation
    motifs : MotifConfig
        Motif deviation scoring
    differential : DifferentialConfig
        Differential accessibility tests
    resolutions : List[float]
        Extra clustering resolutions computed by the session
    covariate : str
        Metadata column used as covariate in differential tests
    """

    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    lsi: LSIConfig = field(default_factory=LSIConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    motifs: MotifConfig = field(default_factory=MotifConfig)
    differential: DifferentialConfig = field(default_factory=DifferentialConfig)
    resolutions: List[float] = field(default_factory=list)
    covariate: str = "total_counts"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Build from a nested dictionary.

        The sections may sit under a top-level ``analysis`` key. Unknown
        section names and unknown keys within a section raise TypeError.
        """
        data = dict(data or {})
        # Handle nested analysis section
        if "analysis" in data:
            data = dict(data["analysis"] or {})
        unknown = sorted(set(data) - {f.name for f in fields(cls)})
        if unknown:
            raise TypeError(f"Unknown configuration section(s): {', '.join(map(str, unknown))}")

        def section(name: str) -> Dict[str, Any]:
            return data.get(name) or {}

        return cls(
            qc=QCConfig(**section("qc")),
            normalization=NormalizationConfig(**section("normalization")),
            lsi=LSIConfig(**section("lsi")),
            clustering=ClusteringConfig(**section("clustering")),
            activity=ActivityConfig(**section("activity")),
            motifs=MotifConfig(**section("motifs")),
            differential=DifferentialConfig(**section("differential")),
            resolutions=[float(r) for r in data.get("resolutions") or []],
            covariate=data.get("covariate", "total_counts"),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AnalysisConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Write configuration to YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump({"analysis": self.to_dict()}, f, sort_keys=False)
