from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from pydicom.dataset import Dataset

from .constants import (
    RT_DOSE_STORAGE,
    RT_IMAGE_STORAGE,
    RT_PLAN_STORAGE,
    RT_STRUCTURE_SET_STORAGE,
)
from .reader import structure_set_referenced_uids
from .utils import first_item, get_str, read_dicom

logger = logging.getLogger(__name__)

RT_PLAN_LABEL_TAG = (0x300A, 0x0002)


@dataclass
class Loadable:
    """One candidate file offered to the caller for loading."""

    name: str
    files: List[Path]
    confidence: float = 1.0
    selected: bool = True
    referenced_instance_uids: List[str] = field(default_factory=list)
    sop_class_uid: str = ""


class DicomIndex:
    """Registry of already indexed DICOM files keyed by SOP Instance UID."""

    COLUMNS = ["sop_instance_uid", "sop_class_uid", "modality", "series_instance_uid", "path"]

    def __init__(self, frame: Optional[pd.DataFrame] = None):
        if frame is None:
            frame = pd.DataFrame(columns=self.COLUMNS)
        self._frame = frame.reset_index(drop=True)
        self._by_uid: Dict[str, Path] = {
            str(uid): Path(p) for uid, p in zip(self._frame["sop_instance_uid"], self._frame["path"])
        }

    def __len__(self) -> int:
        return len(self._by_uid)

    @classmethod
    def build(cls, root: Path) -> "DicomIndex":
        rows = []
        for base, _, files in os.walk(root):
            for name in sorted(files):
                p = Path(base) / name
                ds = read_dicom(p, stop_before_pixels=True)
                if ds is None:
                    continue
                uid = get_str(ds, "SOPInstanceUID")
                if not uid:
                    continue
                rows.append(
                    {
                        "sop_instance_uid": uid,
                        "sop_class_uid": get_str(ds, "SOPClassUID"),
                        "modality": get_str(ds, "Modality"),
                        "series_instance_uid": get_str(ds, "SeriesInstanceUID"),
                        "path": str(p),
                    }
                )
        logger.info("Indexed %d DICOM files under %s", len(rows), root)
        return cls(pd.DataFrame(rows, columns=cls.COLUMNS))

    @classmethod
    def load(cls, csv_path: Path) -> "DicomIndex":
        frame = pd.read_csv(csv_path, dtype=str).fillna("")
        missing = [c for c in cls.COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"DICOM index {csv_path} is missing columns: {', '.join(missing)}")
        return cls(frame)

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def save(self, csv_path: Path) -> None:
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        self._frame.to_csv(csv_path, index=False)

    def add(self, uid: str, path: Path, sop_class_uid: str = "", modality: str = "", series_uid: str = "") -> None:
        row = pd.DataFrame(
            [[uid, sop_class_uid, modality, series_uid, str(path)]], columns=self.COLUMNS
        )
        self._frame = pd.concat([self._frame, row], ignore_index=True)
        self._by_uid[uid] = Path(path)

    def file_for_instance(self, sop_instance_uid: str) -> Optional[Path]:
        if not sop_instance_uid:
            return None
        return self._by_uid.get(sop_instance_uid)

    def file_value(self, path: Path, tag) -> str:
        ds = read_dicom(path, stop_before_pixels=True)
        if ds is None:
            return ""
        return get_str(ds, tag)


def _examine_dose(ds: Dataset, index: Optional[DicomIndex]) -> Tuple[str, List[str]]:
    name = "RTDOSE"
    description = get_str(ds, "SeriesDescription")
    instance_number = get_str(ds, "InstanceNumber")
    if description:
        name += ": " + description
    if instance_number:
        name += " [" + instance_number + "]"

    uids: List[str] = []
    ref = first_item(ds, "ReferencedRTPlanSequence")
    ref_uid = get_str(ref, "ReferencedSOPInstanceUID") if ref is not None else ""
    if ref_uid:
        uids.append(ref_uid)
        if index is not None:
            plan_file = index.file_for_instance(ref_uid)
            if plan_file is not None:
                name += ": " + index.file_value(plan_file, RT_PLAN_LABEL_TAG)
    return name, uids


def _examine_plan(ds: Dataset) -> Tuple[str, List[str]]:
    name = "RTPLAN"
    label = get_str(ds, "RTPlanLabel")
    plan_name = get_str(ds, "RTPlanName")
    if label and plan_name:
        name += f": {label} ({plan_name})" if label != plan_name else f": {label}"
    elif label or plan_name:
        name += ": " + (label or plan_name)
    return name, []


def _examine_structure_set(ds: Dataset) -> Tuple[str, List[str]]:
    name = "RTSTRUCT"
    label = get_str(ds, "StructureSetLabel")
    if label:
        name += ": " + label
    return name, structure_set_referenced_uids(ds)


def _examine_image(ds: Dataset) -> Tuple[str, List[str]]:
    name = "RTIMAGE"
    label = get_str(ds, "RTImageLabel")
    if label:
        name += ": " + label
    ref = first_item(ds, "ReferencedRTPlanSequence")
    ref_uid = get_str(ref, "ReferencedSOPInstanceUID") if ref is not None else ""
    return name, [ref_uid] if ref_uid else []


def examine_dataset(
    ds: Optional[Dataset],
    sop_class_uid: Optional[str] = None,
    index: Optional[DicomIndex] = None,
) -> Optional[Tuple[str, List[str]]]:
    """Classify a dataset: (display name, referenced SOP instance UIDs), or None if not RT."""
    if ds is None:
        return None
    if sop_class_uid is None:
        sop_class_uid = get_str(ds, "SOPClassUID")
    if sop_class_uid == RT_DOSE_STORAGE:
        return _examine_dose(ds, index)
    if sop_class_uid == RT_PLAN_STORAGE:
        return _examine_plan(ds)
    if sop_class_uid == RT_STRUCTURE_SET_STORAGE:
        return _examine_structure_set(ds)
    if sop_class_uid == RT_IMAGE_STORAGE:
        return _examine_image(ds)
    return None


def examine_files(paths: Iterable[Path], index: Optional[DicomIndex] = None) -> List[Loadable]:
    """Probe each file independently; unreadable and non-RT files are left out."""
    loadables: List[Loadable] = []
    for p in paths:
        p = Path(p)
        ds = read_dicom(p, stop_before_pixels=True)
        if ds is None:
            continue
        sop_class_uid = get_str(ds, "SOPClassUID")
        if not sop_class_uid:
            continue
        result = examine_dataset(ds, sop_class_uid, index)
        if result is None:
            continue
        name, uids = result
        series_number = get_str(ds, "SeriesNumber")
        if series_number:
            name = f"{series_number}: {name}"
        loadables.append(
            Loadable(
                name=name,
                files=[p],
                referenced_instance_uids=uids,
                sop_class_uid=sop_class_uid,
            )
        )
    logger.info("Examined files: %d RT loadable(s) found", len(loadables))
    return loadables


def loadables_to_frame(loadables: List[Loadable]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "name": l.name,
                "file": str(l.files[0]) if l.files else "",
                "confidence": l.confidence,
                "selected": l.selected,
                "referenced_instance_uids": " ".join(l.referenced_instance_uids),
            }
            for l in loadables
        ],
        columns=["name", "file", "confidence", "selected", "referenced_instance_uids"],
    )
