from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from skimage.draw import polygon as draw_polygon
from skimage.measure import marching_cubes

from .utils import geometry_matrix

logger = logging.getLogger(__name__)

PLANAR_CONTOUR = "Planar contour"
BINARY_LABELMAP = "Binary labelmap"
CLOSED_SURFACE = "Closed surface"

IMAGE_REPRESENTATIONS = (BINARY_LABELMAP,)
POLY_REPRESENTATIONS = (PLANAR_CONTOUR, CLOSED_SURFACE)


@dataclass
class ImageGeometry:
    """Voxel grid: shape in [k, j, i] order plus IJK to RAS matrix."""

    shape: Tuple[int, int, int]
    ijk_to_ras: np.ndarray

    def matches(self, other: "ImageGeometry", tol: float = 1e-6) -> bool:
        return tuple(self.shape) == tuple(other.shape) and np.allclose(self.ijk_to_ras, other.ijk_to_ras, atol=tol)


@dataclass
class Labelmap:
    array: np.ndarray
    ijk_to_ras: np.ndarray

    @property
    def geometry(self) -> ImageGeometry:
        return ImageGeometry(tuple(self.array.shape), np.asarray(self.ijk_to_ras, dtype=float))

    def copy(self) -> "Labelmap":
        return Labelmap(self.array.copy(), np.array(self.ijk_to_ras, dtype=float))


@dataclass
class SurfaceMesh:
    vertices: np.ndarray
    faces: np.ndarray

    @property
    def is_empty(self) -> bool:
        return len(self.vertices) == 0 or len(self.faces) == 0

    def transformed(self, matrix: np.ndarray) -> "SurfaceMesh":
        pts = np.c_[self.vertices, np.ones(len(self.vertices))] @ np.asarray(matrix, dtype=float).T
        return SurfaceMesh(pts[:, :3], self.faces.copy())


@dataclass
class Segment:
    name: str
    color: Tuple[float, float, float] = (1.0, 0.0, 0.0)
    # representation name -> data (list of (N,3) contours, Labelmap or SurfaceMesh)
    representations: Dict[str, object] = field(default_factory=dict)


@dataclass
class Segmentation:
    master_representation: str = PLANAR_CONTOUR
    segments: "OrderedDict[str, Segment]" = field(default_factory=OrderedDict)
    reference_geometry: Optional[ImageGeometry] = None
    rasterization_spacing_mm: float = 1.0

    def add_segment(self, segment: Segment, segment_id: Optional[str] = None) -> str:
        if segment_id is None:
            base = segment.name or "Segment"
            segment_id = base
            n = 1
            while segment_id in self.segments:
                segment_id = f"{base}_{n}"
                n += 1
        self.segments[segment_id] = segment
        return segment_id

    def segment_ids(self) -> List[str]:
        return list(self.segments.keys())

    def is_master_image_data(self) -> bool:
        return self.master_representation in IMAGE_REPRESENTATIONS

    def is_master_poly_data(self) -> bool:
        return self.master_representation in POLY_REPRESENTATIONS

    def create_representation(self, name: str) -> bool:
        """Derive ``name`` from the master representation for every segment."""
        if name == self.master_representation:
            return all(name in s.representations for s in self.segments.values())
        for segment_id, segment in self.segments.items():
            if name in segment.representations:
                continue
            master = segment.representations.get(self.master_representation)
            if master is None:
                logger.error("Segment %s has no %s representation", segment_id, self.master_representation)
                return False
            converted = convert_representation(
                master,
                self.master_representation,
                name,
                reference_geometry=self.reference_geometry,
                spacing_mm=self.rasterization_spacing_mm,
            )
            if converted is None:
                logger.error(
                    "Conversion of segment %s from %s to %s failed", segment_id, self.master_representation, name
                )
                return False
            segment.representations[name] = converted
        return True


# --- Conversions --------------------------------------------------------------


def contour_grid(contours: List[np.ndarray], spacing_mm: float = 1.0) -> ImageGeometry:
    """Axis-aligned RAS grid enclosing the contours, one slice per contour plane."""
    pts = np.vstack(contours)
    zs = np.unique(np.round(pts[:, 2], 3))
    if len(zs) > 1:
        slice_spacing = float(np.min(np.diff(zs)))
    else:
        slice_spacing = spacing_mm
    lo = pts.min(axis=0) - np.array([spacing_mm, spacing_mm, 0.0])
    hi = pts.max(axis=0) + np.array([spacing_mm, spacing_mm, 0.0])
    shape_i = int(np.ceil((hi[0] - lo[0]) / spacing_mm)) + 1
    shape_j = int(np.ceil((hi[1] - lo[1]) / spacing_mm)) + 1
    shape_k = int(round((zs[-1] - zs[0]) / slice_spacing)) + 1
    ijk_to_ras = geometry_matrix(lo, (spacing_mm, spacing_mm, slice_spacing), np.eye(3))
    return ImageGeometry((shape_k, shape_j, shape_i), ijk_to_ras)


def contours_to_labelmap(
    contours: List[np.ndarray],
    reference_geometry: Optional[ImageGeometry] = None,
    spacing_mm: float = 1.0,
) -> Optional[Labelmap]:
    """Rasterize planar contours; nested contours on one slice toggle (holes)."""
    contours = [np.asarray(c, dtype=float) for c in contours if len(c) >= 3]
    if not contours:
        return None
    geometry = reference_geometry or contour_grid(contours, spacing_mm)
    nk, nj, ni = geometry.shape
    ras_to_ijk = np.linalg.inv(geometry.ijk_to_ras)
    mask = np.zeros((nk, nj, ni), dtype=np.uint8)
    for contour in contours:
        ijk = (np.c_[contour, np.ones(len(contour))] @ ras_to_ijk.T)[:, :3]
        k = int(round(float(np.mean(ijk[:, 2]))))
        if k < 0 or k >= nk:
            continue
        rr, cc = draw_polygon(ijk[:, 1], ijk[:, 0], shape=(nj, ni))
        mask[k, rr, cc] ^= 1
    return Labelmap(mask, np.array(geometry.ijk_to_ras, dtype=float))


def labelmap_to_surface(labelmap: Labelmap) -> Optional[SurfaceMesh]:
    arr = np.asarray(labelmap.array) > 0
    if not arr.any():
        return None
    padded = np.pad(arr.astype(np.float32), 1)
    verts, faces, _, _ = marching_cubes(padded, level=0.5)
    # marching_cubes returns (k, j, i); undo padding and reorder to (i, j, k)
    ijk = verts[:, ::-1] - 1.0
    ras = (np.c_[ijk, np.ones(len(ijk))] @ np.asarray(labelmap.ijk_to_ras, dtype=float).T)[:, :3]
    return SurfaceMesh(ras, faces.astype(np.int64))


def convert_representation(
    data,
    source: str,
    target: str,
    reference_geometry: Optional[ImageGeometry] = None,
    spacing_mm: float = 1.0,
):
    if source == target:
        return data
    if source == PLANAR_CONTOUR and target == BINARY_LABELMAP:
        return contours_to_labelmap(data, reference_geometry, spacing_mm)
    if source == PLANAR_CONTOUR and target == CLOSED_SURFACE:
        labelmap = contours_to_labelmap(data, reference_geometry, spacing_mm)
        return labelmap_to_surface(labelmap) if labelmap is not None else None
    if source == BINARY_LABELMAP and target == CLOSED_SURFACE:
        return labelmap_to_surface(data)
    logger.error("No conversion path from %s to %s", source, target)
    return None
