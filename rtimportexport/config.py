from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple, Union

import yaml

logger = logging.getLogger(__name__)

# (dose level label, RGB 0..1); first and last labels bound the dose window
DEFAULT_ISODOSE_LEVELS: List[Tuple[str, Tuple[float, float, float]]] = [
    ("5", (0.0, 1.0, 0.0)),
    ("10", (0.5, 1.0, 0.0)),
    ("15", (1.0, 1.0, 0.0)),
    ("20", (1.0, 0.66, 0.0)),
    ("25", (1.0, 0.33, 0.0)),
    ("30", (1.0, 0.0, 0.0)),
]


@dataclass
class IsodoseColorTable:
    levels: List[Tuple[str, Tuple[float, float, float]]] = field(
        default_factory=lambda: list(DEFAULT_ISODOSE_LEVELS)
    )

    def window_bounds(self) -> Tuple[float, float]:
        """Dose window from the lowest and highest isodose level names."""
        if not self.levels:
            raise ValueError("Isodose color table has no levels")
        return float(self.levels[0][0]), float(self.levels[-1][0])


@dataclass
class ImportExportConfig:
    # Hierarchy item naming
    display_patient_id_in_name: bool = False
    display_patient_birth_date_in_name: bool = False
    display_study_id_in_name: bool = False
    display_study_date_in_name: bool = False

    # Plan import
    isocenter_tolerance: float = 1e-3

    # Structure set import: skip closed surface derivation above these point counts
    max_points_per_segment: int = 800_000
    max_total_points: int = 3_000_000
    # Contour rasterization grid used when no referenced volume is loaded
    contour_rasterization_spacing_mm: float = 1.0

    # Dose import
    isodose_color_table: IsodoseColorTable = field(default_factory=IsodoseColorTable)

    # Export
    shear_epsilon: float = 1e-5

    # Optional registry of already indexed files (CSV written by DicomIndex.save)
    dicom_index_path: Path | None = None
    logs_root: Path | None = None

    def ensure_dirs(self) -> None:
        if self.logs_root is not None:
            self.logs_root.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Union[str, Path, None]) -> ImportExportConfig:
    """Read an ImportExportConfig from YAML; unknown keys are ignored with a warning."""
    cfg = ImportExportConfig()
    if config_path is None:
        return cfg
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning("Import/export config not found: %s", config_path)
        return cfg

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a mapping")

    for key, value in data.items():
        if key == "isodose_levels":
            levels = []
            for entry in value or []:
                try:
                    levels.append((str(entry["dose"]), tuple(float(c) for c in entry["color"])))
                except (KeyError, TypeError) as exc:
                    raise ValueError(f"Invalid isodose level entry: {entry!r}") from exc
            cfg.isodose_color_table = IsodoseColorTable(levels=levels)
        elif key in ("dicom_index_path", "logs_root"):
            setattr(cfg, key, Path(value) if value else None)
        elif hasattr(cfg, key):
            setattr(cfg, key, value)
        else:
            logger.warning("Ignoring unknown configuration key: %s", key)

    logger.info("Loaded import/export configuration from %s", config_path)
    return cfg
