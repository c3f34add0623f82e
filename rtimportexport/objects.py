from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np


@dataclass
class DicomIdentity:
    """Patient / study / series keys shared by every RT object."""

    patient_name: str = ""
    patient_id: str = ""
    patient_sex: str = ""
    patient_birth_date: str = ""
    patient_comments: str = ""
    study_instance_uid: str = ""
    study_id: str = ""
    study_description: str = ""
    study_date: str = ""
    study_time: str = ""
    series_instance_uid: str = ""
    series_modality: str = ""
    series_number: str = ""
    series_description: str = ""
    sop_instance_uid: str = ""
    frame_of_reference_uid: str = ""


@dataclass
class RTDoseObject:
    identity: DicomIdentity
    # Raw stored values, shape [k, j, i]; grid scaling not yet applied
    voxels: np.ndarray
    ijk_to_ras: np.ndarray
    grid_scaling: float = 1.0
    dose_units: str = ""
    dose_type: str = ""
    referenced_plan_uid: Optional[str] = None
    instance_number: str = ""
    path: Optional[Path] = None


@dataclass
class RTBeam:
    number: int
    name: str = ""
    description: str = ""
    # ((x1, x2), (y1, y2)) in mm, copied verbatim
    jaws: Tuple[Tuple[float, float], Tuple[float, float]] = ((0.0, 0.0), (0.0, 0.0))
    gantry_angle: float = 0.0
    collimator_angle: float = 0.0
    couch_angle: float = 0.0
    source_axis_distance: float = 1000.0
    isocenter: Tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass
class RTPlanObject:
    identity: DicomIdentity
    label: str = ""
    name: str = ""
    beams: List[RTBeam] = field(default_factory=list)
    referenced_structure_set_uid: Optional[str] = None
    referenced_dose_uids: List[str] = field(default_factory=list)
    path: Optional[Path] = None


@dataclass
class RTRoi:
    number: int
    name: str
    color: Tuple[float, float, float] = (1.0, 0.0, 0.0)
    referenced_series_uid: str = ""
    # One (N, 3) RAS array per closed planar contour
    contours: List[np.ndarray] = field(default_factory=list)

    @property
    def point_count(self) -> int:
        return int(sum(len(c) for c in self.contours))


@dataclass
class RTStructureSetObject:
    identity: DicomIdentity
    label: str = ""
    rois: List[RTRoi] = field(default_factory=list)
    referenced_instance_uids: List[str] = field(default_factory=list)
    path: Optional[Path] = None


@dataclass
class RTImageObject:
    identity: DicomIdentity
    # Shape [k, j, i]; k == 1 for a single portal image
    pixels: np.ndarray
    ijk_to_ras: np.ndarray
    label: str = ""
    window_center: float = 0.0
    window_width: float = 0.0
    sid: float = 0.0
    image_plane_position: Tuple[float, float] = (0.0, 0.0)
    gantry_angle: float = 0.0
    couch_angle: float = 0.0
    collimator_angle: float = 0.0
    source_axis_distance: float = 1000.0
    referenced_plan_uid: Optional[str] = None
    referenced_beam_number: Optional[int] = None
    path: Optional[Path] = None
