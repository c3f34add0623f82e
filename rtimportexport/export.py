from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import SimpleITK as sitk

from .config import ImportExportConfig
from .constants import (
    DICOM_INSTANCE_UID_NAME,
    DICOM_UID_NAME,
    DOSE_UNIT_NAME_ATTRIBUTE,
    DOSE_VOLUME_IDENTIFIER_ATTRIBUTE,
    NO_SERIES_DESCRIPTION,
    NO_STUDY_DESCRIPTION,
    PATIENT_ID_ATTRIBUTE,
    PATIENT_NAME_ATTRIBUTE,
    PATIENT_SEX_ATTRIBUTE,
    SERIES_MODALITY_ATTRIBUTE,
    SERIES_NUMBER_ATTRIBUTE,
    STUDY_DATE_ATTRIBUTE,
    STUDY_DESCRIPTION_ATTRIBUTE,
    STUDY_ID_ATTRIBUTE,
    STUDY_TIME_ATTRIBUTE,
)
from .entities import EntityKind, EntityStore, SegmentationNode, VolumeNode
from .hierarchy import INVALID_ITEM_ID, Level, SubjectHierarchy
from .segmentation import BINARY_LABELMAP, CLOSED_SURFACE, ImageGeometry, Labelmap, SurfaceMesh
from .slicing import slice_mesh
from .utils import LPS_TO_RAS, geometry_matrix, has_shear, split_geometry
from .writer import DicomRtWriter

logger = logging.getLogger(__name__)

PATIENT_TAGS = ("PatientName", "PatientID", "PatientSex", "StudyDate", "StudyTime", "StudyDescription")
SERIES_TAGS = ("SeriesDescription", "SeriesNumber", "Modality")


class ExportError(RuntimeError):
    """Export aborted; the message is returned to the caller."""


@dataclass
class Exportable:
    item_id: int
    directory: Path = Path(".")
    tags: Dict[str, str] = field(default_factory=dict)


# --- geometry helpers -----------------------------------------------------------


def world_matrix(ijk_to_ras: np.ndarray, parent_transform: Optional[np.ndarray] = None) -> np.ndarray:
    m = np.asarray(ijk_to_ras, dtype=float)
    if parent_transform is not None:
        m = np.asarray(parent_transform, dtype=float) @ m
    return m


def resample_sheared(
    array: np.ndarray, ijk_to_ras: np.ndarray, order: int = 1
) -> Tuple[np.ndarray, np.ndarray]:
    """Resample a volume onto a grid aligned with the LPS patient axes.

    Voxel spacing is kept per axis; the grid covers the bounding box of the
    input corners.  Returns the new array and its IJK to RAS matrix, which
    needs no further transform.
    """
    ijk_to_lps = LPS_TO_RAS @ np.asarray(ijk_to_ras, dtype=float)
    _, spacing, _ = split_geometry(ijk_to_lps)
    nk, nj, ni = array.shape
    corners = np.array(
        [[i, j, k, 1.0] for i in (0, ni - 1) for j in (0, nj - 1) for k in (0, nk - 1)], dtype=float
    )
    world = (corners @ ijk_to_lps.T)[:, :3]
    lo, hi = world.min(axis=0), world.max(axis=0)
    out_shape_ijk = np.floor((hi - lo) / spacing + 1e-6).astype(int) + 1
    out_ijk_to_lps = geometry_matrix(lo, spacing, np.eye(3))

    # the input is wrapped with a unit grid, so its physical points are its ijk indices
    lps_to_ijk = np.linalg.inv(ijk_to_lps)
    transform = sitk.AffineTransform(3)
    transform.SetMatrix(tuple(float(v) for v in lps_to_ijk[:3, :3].ravel()))
    transform.SetTranslation(tuple(float(v) for v in lps_to_ijk[:3, 3]))
    fill = float(array.min()) if array.size else 0.0
    image = sitk.Resample(
        sitk.GetImageFromArray(np.asarray(array, dtype=np.float32)),
        [int(n) for n in out_shape_ijk],
        transform,
        sitk.sitkNearestNeighbor if order == 0 else sitk.sitkLinear,
        tuple(float(v) for v in lo),
        tuple(float(v) for v in spacing),
        tuple(float(v) for v in np.eye(3).ravel()),
        fill,
        sitk.sitkFloat32,
    )
    resampled = sitk.GetArrayFromImage(image)
    if order == 0:
        resampled = resampled.astype(array.dtype)
    return resampled, LPS_TO_RAS @ out_ijk_to_lps


def to_sitk_image(array: np.ndarray, ijk_to_ras: np.ndarray) -> sitk.Image:
    """Wrap a [k, j, i] array as a SimpleITK image in the LPS frame."""
    origin, spacing, direction = split_geometry(LPS_TO_RAS @ np.asarray(ijk_to_ras, dtype=float))
    img = sitk.GetImageFromArray(np.ascontiguousarray(array))
    img.SetOrigin(tuple(float(v) for v in origin))
    img.SetSpacing(tuple(float(v) for v in spacing))
    img.SetDirection(tuple(float(v) for v in direction.ravel()))
    return img


def _axis_aligned(array: np.ndarray, matrix: np.ndarray, config: ImportExportConfig, what: str, order: int = 1):
    if has_shear(matrix, config.shear_epsilon):
        logger.info("%s has a sheared grid; resampling onto an axis-aligned grid before export", what)
        return resample_sheared(array, matrix, order=order), True
    return (array, matrix), False


# --- roles ----------------------------------------------------------------------


def _series_tags(tags: Dict[str, str]) -> Dict[str, str]:
    out = {k: tags.get(k, "") for k in SERIES_TAGS}
    if out["SeriesDescription"] == NO_SERIES_DESCRIPTION:
        out["SeriesDescription"] = ""
    return out


def _assign_roles(hierarchy: SubjectHierarchy, store: EntityStore, exportables: List[Exportable]):
    image = dose = segmentation = None
    for exportable in exportables:
        if not hierarchy.has_item(exportable.item_id):
            logger.warning("Exportable refers to missing hierarchy item %d", exportable.item_id)
            continue
        entity = store.get(hierarchy.item(exportable.item_id).entity_id)
        is_dose = hierarchy.attribute(exportable.item_id, DOSE_VOLUME_IDENTIFIER_ATTRIBUTE) != ""
        if isinstance(entity, VolumeNode) and (is_dose or entity.kind == EntityKind.DOSE_VOLUME):
            dose = (exportable, entity)
        elif isinstance(entity, SegmentationNode):
            segmentation = (exportable, entity)
        elif isinstance(entity, VolumeNode) and entity.kind == EntityKind.VOLUME:
            image = (exportable, entity)
        else:
            logger.warning(
                "Unable to assign exportable '%s' to dose, segmentation or anatomical image",
                hierarchy.name(exportable.item_id),
            )
    return image, dose, segmentation


# --- pipeline -------------------------------------------------------------------


def export_dicom_rt_study(
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    exportables: List[Exportable],
    writer: Optional[DicomRtWriter] = None,
    config: Optional[ImportExportConfig] = None,
) -> str:
    """Export an anatomical image with optional dose and structures; "" on success, else the error message."""
    config = config or ImportExportConfig()
    if not exportables:
        logger.error("Empty exportable list")
        return "Empty exportable list"
    if writer is None:
        writer = DicomRtWriter(Path(exportables[0].directory))
    try:
        _export(hierarchy, store, exportables, writer, config)
    except ExportError as exc:
        logger.error("%s", exc)
        return str(exc)
    except Exception as exc:
        logger.exception("DICOM-RT export failed")
        return f"DICOM-RT export failed: {exc}"
    return ""


def _export(
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    exportables: List[Exportable],
    writer: DicomRtWriter,
    config: ImportExportConfig,
) -> None:
    first = exportables[0]
    patient = {key: first.tags.get(key, "") for key in PATIENT_TAGS}
    if patient["StudyDescription"] == NO_STUDY_DESCRIPTION:
        patient["StudyDescription"] = ""
    writer.set_patient(patient)

    study_item = INVALID_ITEM_ID
    if hierarchy.has_item(first.item_id):
        study_item = hierarchy.ancestor_at_level(first.item_id, Level.STUDY)
    if study_item != INVALID_ITEM_ID:
        writer.set_study(hierarchy.uid(study_item, DICOM_UID_NAME), hierarchy.attribute(study_item, STUDY_ID_ATTRIBUTE))
    else:
        logger.warning("No study found for exported items; a new study instance UID is generated")

    image, dose, segmentation = _assign_roles(hierarchy, store, exportables)
    if image is None:
        raise ExportError("Must export the primary anatomical (CT/MR) image")

    image_exportable, image_node = image
    image_matrix = world_matrix(image_node.ijk_to_ras, image_node.parent_transform)
    (image_array, image_matrix), resampled = _axis_aligned(
        image_node.array, image_matrix, config, f"Image '{image_node.name}'"
    )
    slice_uids = hierarchy.uid(image_exportable.item_id, DICOM_INSTANCE_UID_NAME).split()
    if resampled:
        slice_uids = []
    reference = to_sitk_image(image_array, image_matrix)
    writer.set_image(reference, slice_uids, _series_tags(image_exportable.tags))
    slice_uids = list(writer.slice_uids)

    if dose is not None:
        dose_exportable, dose_node = dose
        dose_matrix = world_matrix(dose_node.ijk_to_ras, dose_node.parent_transform)
        (dose_array, dose_matrix), _ = _axis_aligned(dose_node.array, dose_matrix, config, f"Dose '{dose_node.name}'")
        tags = _series_tags(dose_exportable.tags)
        if study_item != INVALID_ITEM_ID and hierarchy.attribute(study_item, DOSE_UNIT_NAME_ATTRIBUTE):
            tags["DoseUnits"] = hierarchy.attribute(study_item, DOSE_UNIT_NAME_ATTRIBUTE)
        writer.set_dose(to_sitk_image(dose_array, dose_matrix), tags)

    if segmentation is not None:
        seg_exportable, seg_node = segmentation
        writer.set_structure_set_tags(_series_tags(seg_exportable.tags))
        seg = seg_node.segmentation
        if seg.is_master_image_data():
            _export_masks(seg_node, reference, image_array.shape, image_matrix, writer, config)
        elif seg.is_master_poly_data():
            if not seg.create_representation(CLOSED_SURFACE):
                raise ExportError(f"Failed to create closed surface representation for '{seg_node.name}'")
            _export_surfaces(seg_node, image_array.shape, image_matrix, slice_uids, writer)
        else:
            raise ExportError("Structure set contains unsupported master representation")

    try:
        writer.write()
    except Exception as exc:
        raise ExportError(f"Failed to write DICOM-RT study: {exc}") from exc


def _export_masks(
    seg_node: SegmentationNode,
    reference: sitk.Image,
    reference_shape: Tuple[int, int, int],
    reference_matrix: np.ndarray,
    writer: DicomRtWriter,
    config: ImportExportConfig,
) -> None:
    reference_geometry = ImageGeometry(tuple(reference_shape), reference_matrix)
    for segment_id, segment in seg_node.segmentation.segments.items():
        labelmap = segment.representations.get(BINARY_LABELMAP)
        if not isinstance(labelmap, Labelmap):
            raise ExportError(f"Failed to get labelmap of segment '{segment_id}'")
        labelmap = labelmap.copy()
        labelmap.ijk_to_ras = world_matrix(labelmap.ijk_to_ras, seg_node.parent_transform)
        (array, matrix), _ = _axis_aligned(
            labelmap.array, labelmap.ijk_to_ras, config, f"Segment '{segment_id}'", order=0
        )
        mask = to_sitk_image((np.asarray(array) > 0).astype(np.uint8), matrix)
        if not ImageGeometry(tuple(array.shape), matrix).matches(reference_geometry):
            mask = sitk.Resample(mask, reference, sitk.Transform(), sitk.sitkNearestNeighbor, 0, sitk.sitkUInt8)
        writer.add_mask_structure(mask, segment.name, segment.color)


def _export_surfaces(
    seg_node: SegmentationNode,
    reference_shape: Tuple[int, int, int],
    reference_matrix: np.ndarray,
    slice_uids: List[str],
    writer: DicomRtWriter,
) -> None:
    normal = reference_matrix[:3, 2] / np.linalg.norm(reference_matrix[:3, 2])
    slice_origins = [reference_matrix[:3, 3] + k * reference_matrix[:3, 2] for k in range(reference_shape[0])]

    for segment_id, segment in seg_node.segmentation.segments.items():
        surface = segment.representations.get(CLOSED_SURFACE)
        if not isinstance(surface, SurfaceMesh) or surface.is_empty:
            raise ExportError(f"Failed to get closed surface of segment '{segment_id}'")
        if seg_node.parent_transform is not None:
            surface = surface.transformed(seg_node.parent_transform)
        distances = surface.vertices @ normal
        lowest, highest = float(distances.min()), float(distances.max())

        slice_numbers: List[int] = []
        uids: List[str] = []
        polygons: List[List[np.ndarray]] = []
        for k, origin in enumerate(slice_origins):
            d = float(origin @ normal)
            if d < lowest or d > highest:
                continue
            loops = slice_mesh(surface.vertices, surface.faces, origin, normal)
            if not loops:
                continue
            slice_numbers.append(k)
            uids.append(slice_uids[k] if k < len(slice_uids) else "")
            polygons.append(loops)
        if not slice_numbers:
            logger.warning("Segment '%s' does not intersect any slice of the reference image", segment_id)
            continue
        writer.add_contour_structure(segment.name, segment.color, slice_numbers, uids, polygons)


def exportable_for_item(hierarchy: SubjectHierarchy, item_id: int, directory: Path) -> Exportable:
    """Exportable whose tags are filled from the item's patient, study and series attributes."""
    tags: Dict[str, str] = {}
    patient = hierarchy.ancestor_at_level(item_id, Level.PATIENT)
    if patient != INVALID_ITEM_ID:
        tags["PatientName"] = hierarchy.attribute(patient, PATIENT_NAME_ATTRIBUTE)
        tags["PatientID"] = hierarchy.attribute(patient, PATIENT_ID_ATTRIBUTE)
        tags["PatientSex"] = hierarchy.attribute(patient, PATIENT_SEX_ATTRIBUTE)
    study = hierarchy.ancestor_at_level(item_id, Level.STUDY)
    if study != INVALID_ITEM_ID:
        tags["StudyDate"] = hierarchy.attribute(study, STUDY_DATE_ATTRIBUTE)
        tags["StudyTime"] = hierarchy.attribute(study, STUDY_TIME_ATTRIBUTE)
        tags["StudyDescription"] = hierarchy.attribute(study, STUDY_DESCRIPTION_ATTRIBUTE) or NO_STUDY_DESCRIPTION
    tags["SeriesDescription"] = hierarchy.name(item_id) or NO_SERIES_DESCRIPTION
    tags["SeriesNumber"] = hierarchy.attribute(item_id, SERIES_NUMBER_ATTRIBUTE)
    tags["Modality"] = hierarchy.attribute(item_id, SERIES_MODALITY_ATTRIBUTE)
    return Exportable(item_id=item_id, directory=Path(directory), tags=tags)
