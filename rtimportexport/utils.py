from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import numpy as np
import pydicom
from pydicom.dataset import Dataset, FileDataset
from pydicom.tag import Tag

logger = logging.getLogger(__name__)

# Flips the first two axes: DICOM patient (LPS) <-> scene world (RAS)
LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def read_dicom(path: str | os.PathLike, stop_before_pixels: bool = False) -> FileDataset | None:
    try:
        return pydicom.dcmread(str(path), force=True, stop_before_pixels=stop_before_pixels)
    except Exception as e:
        logger.debug("Failed to read DICOM %s: %s", path, e)
        return None


def get(ds: Dataset, tag: int | tuple[int, int] | str, default: Any = None) -> Any:
    """Element value, ``default`` when the element is absent.

    A present but empty element yields ``""`` (or an empty sequence), which is
    distinct from the ``default`` returned for a missing one.
    """
    try:
        if isinstance(tag, str):
            if tag not in ds:
                return default
            value = getattr(ds, tag)
        else:
            if Tag(tag) not in ds:
                return default
            value = ds[Tag(tag)].value
    except Exception:
        return default
    if value is None:
        return ""
    return value


def get_str(ds: Dataset, tag: int | tuple[int, int] | str) -> str:
    value = get(ds, tag, "")
    return str(value).strip() if value is not None else ""


def get_float(ds: Dataset, tag: int | tuple[int, int] | str, default: float = 0.0) -> float:
    value = get(ds, tag)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def iter_items(ds: Dataset | None, keyword: str) -> Iterator[Dataset]:
    """Iterate a sequence positionally; missing or empty sequences yield nothing."""
    if ds is None:
        return
    seq = get(ds, keyword)
    if not seq:
        return
    for item in seq:
        yield item


def first_item(ds: Dataset | None, keyword: str) -> Optional[Dataset]:
    for item in iter_items(ds, keyword):
        return item
    return None


def format_number(value: float) -> str:
    """Shortest general representation, as stored in string attributes."""
    return f"{float(value):g}"


def parse_numbers(text: str) -> list[float]:
    out: list[float] = []
    for part in (text or "").split():
        try:
            out.append(float(part))
        except ValueError:
            continue
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def list_files(root: Path, patterns: Iterable[str] | None = None) -> list[Path]:
    if patterns is None:
        patterns = ["*.dcm", "*"]
    out: list[Path] = []
    for base, _, files in os.walk(root):
        for name in sorted(files):
            path = Path(base) / name
            if any(path.match(pat) for pat in patterns):
                out.append(path)
    return out


# --- Homogeneous matrix helpers ----------------------------------------------


def translation(x: float, y: float, z: float) -> np.ndarray:
    m = np.eye(4)
    m[:3, 3] = (x, y, z)
    return m


def rotation(angle_deg: float, axis: tuple[float, float, float]) -> np.ndarray:
    """Right-handed rotation about ``axis`` by ``angle_deg`` degrees."""
    a = np.asarray(axis, dtype=float)
    a = a / np.linalg.norm(a)
    theta = np.deg2rad(angle_deg)
    c, s = np.cos(theta), np.sin(theta)
    x, y, z = a
    t = 1.0 - c
    m = np.eye(4)
    m[:3, :3] = [
        [t * x * x + c, t * x * y - s * z, t * x * z + s * y],
        [t * x * y + s * z, t * y * y + c, t * y * z - s * x],
        [t * x * z - s * y, t * y * z + s * x, t * z * z + c],
    ]
    return m


def geometry_matrix(origin, spacing, direction) -> np.ndarray:
    """Voxel index (i, j, k) to world matrix from origin, spacing and 3x3 direction columns."""
    m = np.eye(4)
    m[:3, :3] = np.asarray(direction, dtype=float).reshape(3, 3) @ np.diag(np.asarray(spacing, dtype=float))
    m[:3, 3] = np.asarray(origin, dtype=float)
    return m


def split_geometry(ijk_to_world: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Inverse of :func:`geometry_matrix`: (origin, spacing, direction)."""
    axes = np.asarray(ijk_to_world, dtype=float)[:3, :3]
    spacing = np.linalg.norm(axes, axis=0)
    spacing[spacing == 0] = 1.0
    direction = axes / spacing
    return np.asarray(ijk_to_world, dtype=float)[:3, 3].copy(), spacing, direction


def has_shear(ijk_to_world: np.ndarray, epsilon: float = 1e-5) -> bool:
    """True when the voxel axes of the matrix are not mutually orthogonal."""
    _, _, direction = split_geometry(ijk_to_world)
    for a, b in ((0, 1), (0, 2), (1, 2)):
        if abs(float(np.dot(direction[:, a], direction[:, b]))) > epsilon:
            return True
    return False
