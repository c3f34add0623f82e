from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

import numpy as np
import SimpleITK as sitk

from .config import ImportExportConfig
from .constants import (
    BEAM_NUMBER_ATTRIBUTE,
    COLLIMATOR_ANGLE_ATTRIBUTE,
    COUCH_ANGLE_ATTRIBUTE,
    DICOM_INSTANCE_UID_NAME,
    DICOM_UID_NAME,
    DOSE_UNIT_NAME_ATTRIBUTE,
    DOSE_UNIT_VALUE_ATTRIBUTE,
    DOSE_VOLUME_IDENTIFIER_ATTRIBUTE,
    FIDUCIALS_FOLDER_POSTFIX,
    GANTRY_ANGLE_ATTRIBUTE,
    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
    ROI_REFERENCED_SERIES_UID_ATTRIBUTE,
    RT_SOP_CLASSES,
    RTIMAGE_IDENTIFIER_ATTRIBUTE,
    RTIMAGE_POSITION_ATTRIBUTE,
    RTIMAGE_SID_ATTRIBUTE,
    SERIES_MODALITY_ATTRIBUTE,
    SERIES_NUMBER_ATTRIBUTE,
    SOURCE_AXIS_DISTANCE_ATTRIBUTE,
)
from .entities import (
    BeamNode,
    EntityKind,
    EntityStore,
    MarkupsNode,
    PlanNode,
    SegmentationNode,
    VolumeDisplay,
    VolumeNode,
)
from .examiner import DicomIndex, Loadable, examine_files
from .geometry import RtImageGeometry
from .hierarchy import INVALID_ITEM_ID, Level, SubjectHierarchy, insert_series_in_hierarchy
from .objects import DicomIdentity, RTDoseObject, RTImageObject, RTPlanObject, RTStructureSetObject
from .reader import read_identity, read_rt_object
from .segmentation import CLOSED_SURFACE, PLANAR_CONTOUR, ImageGeometry, Segment, Segmentation
from .utils import LPS_TO_RAS, format_number, geometry_matrix, get_str, list_files, read_dicom

logger = logging.getLogger(__name__)

DOSE_UNIT_VALUE_EPSILON = 1e-6
IMAGE_SERIES_MODALITIES = {"CT", "MR", "PT", "NM", "US"}


@dataclass
class LoadResult:
    success: bool
    entity_ids: List[int] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.success


class _Transaction:
    """Tracks items and entities created by one loader call so a failure can undo them."""

    def __init__(self, hierarchy: SubjectHierarchy, store: EntityStore):
        self.hierarchy = hierarchy
        self.store = store
        self.items: List[int] = []
        self.entities: List[int] = []

    def add_entity(self, entity) -> int:
        entity_id = self.store.add(entity)
        self.entities.append(entity_id)
        return entity_id

    def create_item(self, parent: int, name: str, level: Level = Level.SERIES, entity_id: Optional[int] = None) -> int:
        item_id = self.hierarchy.create_item(parent, name, level, entity_id)
        self.items.append(item_id)
        return item_id

    def rollback(self) -> None:
        for item_id in reversed(self.items):
            self.hierarchy.remove_item(item_id)
        for entity_id in reversed(self.entities):
            self.store.remove(entity_id)


@contextmanager
def _loading(kind: str, hierarchy: SubjectHierarchy, store: EntityStore) -> Iterator[_Transaction]:
    tx = _Transaction(hierarchy, store)
    try:
        with store.batch():
            yield tx
    except Exception:
        logger.exception("Loading %s failed", kind)
        tx.rollback()
        raise


def _run(kind: str, hierarchy: SubjectHierarchy, store: EntityStore, body) -> LoadResult:
    try:
        with _loading(kind, hierarchy, store) as tx:
            body(tx)
    except Exception:
        return LoadResult(False, [])
    return LoadResult(True, list(tx.entities))


def _place_in_series(
    hierarchy: SubjectHierarchy,
    item: int,
    identity: DicomIdentity,
    config: ImportExportConfig,
) -> int:
    """Put a freshly created data item under its series, study and patient.

    The first object of a series becomes the series item itself. Further
    objects of that series become children of it and carry their own SOP
    instance UID, modality and series number. Returns the series item.
    """
    series_item = hierarchy.find_by_uid(DICOM_UID_NAME, identity.series_instance_uid)
    if series_item == INVALID_ITEM_ID:
        hierarchy.set_uid(item, DICOM_UID_NAME, identity.series_instance_uid)
        return insert_series_in_hierarchy(hierarchy, identity, config)

    insert_series_in_hierarchy(hierarchy, replace(identity, sop_instance_uid=""), config)
    hierarchy.set_item_parent(item, series_item)
    hierarchy.set_attribute(item, SERIES_MODALITY_ATTRIBUTE, identity.series_modality)
    hierarchy.set_attribute(item, SERIES_NUMBER_ATTRIBUTE, identity.series_number)
    hierarchy.set_uid(item, DICOM_INSTANCE_UID_NAME, identity.sop_instance_uid)
    logger.debug("Added item %d to existing series item %d", item, series_item)
    return series_item


# --- RT dose ------------------------------------------------------------------


def apply_dose_grid_scaling(voxels: np.ndarray, grid_scaling: float) -> np.ndarray:
    """Raw stored values times the grid scaling, as float32."""
    return (voxels.astype(np.float32).astype(np.float64) * float(grid_scaling)).astype(np.float32)


def load_rt_dose(
    dose: RTDoseObject,
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    config: Optional[ImportExportConfig] = None,
    name: Optional[str] = None,
) -> LoadResult:
    config = config or ImportExportConfig()
    identity = dose.identity
    name = name or ("RTDOSE: " + identity.series_description if identity.series_description else "RTDOSE")

    def body(tx: _Transaction) -> None:
        scaling = dose.grid_scaling
        if not scaling:
            logger.error("Empty dose grid scaling found for dose volume %s; stored values kept unscaled", name)
            scaling = 1.0
        window_min, window_max = config.isodose_color_table.window_bounds()
        display = VolumeDisplay(
            window_min=window_min,
            window_max=window_max,
            window=window_max - window_min,
            level=(window_max + window_min) / 2.0,
            auto_window_level=False,
            lower_threshold=0.5 * scaling,
            apply_threshold=True,
            color_table="Dose",
        )
        volume = VolumeNode(
            name=name,
            array=apply_dose_grid_scaling(dose.voxels, scaling),
            ijk_to_ras=np.array(dose.ijk_to_ras, dtype=float),
            kind=EntityKind.DOSE_VOLUME,
            display=display,
        )
        entity_id = tx.add_entity(volume)

        item = tx.create_item(hierarchy.scene_item_id, name, Level.SERIES, entity_id)
        hierarchy.set_attribute(item, DOSE_VOLUME_IDENTIFIER_ATTRIBUTE, "1")
        if not identity.series_instance_uid:
            logger.error("Series instance UID not found for dose volume %s", name)
        if dose.referenced_plan_uid:
            hierarchy.set_attribute(item, REFERENCED_INSTANCE_UIDS_ATTRIBUTE, dose.referenced_plan_uid)
        else:
            logger.warning("Referenced RT plan SOP instance UID not found for dose volume %s", name)

        _place_in_series(hierarchy, item, identity, config)
        _record_dose_unit(hierarchy, item, dose, name)

    result = _run("RT dose", hierarchy, store, body)
    if result:
        logger.info("Loaded dose volume '%s'", name)
    return result


def _record_dose_unit(hierarchy: SubjectHierarchy, item: int, dose: RTDoseObject, name: str) -> None:
    """Dose unit name and value live on the study item; the first dose loaded for a study sets them."""
    study = hierarchy.ancestor_at_level(item, Level.STUDY)
    if study == INVALID_ITEM_ID:
        logger.error("Unable to get parent study item for dose volume '%s'", name)
        return

    existing_name = hierarchy.attribute(study, DOSE_UNIT_NAME_ATTRIBUTE)
    if not dose.dose_units:
        logger.warning("Empty dose unit name found for dose volume %s", name)
    elif existing_name and existing_name != dose.dose_units:
        logger.warning(
            "Dose unit name already exists (%s) for study and differs from current one (%s)",
            existing_name, dose.dose_units,
        )
    elif not existing_name:
        hierarchy.set_attribute(study, DOSE_UNIT_NAME_ATTRIBUTE, dose.dose_units)

    existing_value = hierarchy.attribute(study, DOSE_UNIT_VALUE_ATTRIBUTE)
    if not dose.grid_scaling:
        logger.warning("Empty dose unit value found for dose volume %s", name)
    elif existing_value:
        if abs(float(existing_value) - dose.grid_scaling) > DOSE_UNIT_VALUE_EPSILON:
            logger.warning(
                "Dose unit value already exists (%s) for study and differs from current one (%s)",
                existing_value, format_number(dose.grid_scaling),
            )
    else:
        hierarchy.set_attribute(study, DOSE_UNIT_VALUE_ATTRIBUTE, format_number(dose.grid_scaling))


# --- RT plan ------------------------------------------------------------------


def load_rt_plan(
    plan: RTPlanObject,
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    config: Optional[ImportExportConfig] = None,
    geometry: Optional[RtImageGeometry] = None,
    name: Optional[str] = None,
) -> LoadResult:
    config = config or ImportExportConfig()
    name = name or ("RTPLAN: " + plan.label if plan.label else "RTPLAN")

    def body(tx: _Transaction) -> None:
        plan_node = PlanNode(name=name)
        plan_id = tx.add_entity(plan_node)

        beam_ids: List[int] = []
        for index, beam in enumerate(plan.beams):
            if index == 0:
                plan_node.set_isocenter(beam.isocenter)
            elif not np.allclose(plan_node.isocenter, beam.isocenter, rtol=0.0, atol=config.isocenter_tolerance):
                logger.warning(
                    "Different isocenters for each beam are not supported; the first isocenter "
                    "will be used for the whole plan %s: (%s, %s, %s)",
                    name, *(format_number(v) for v in plan_node.isocenter),
                )
            beam_node = BeamNode(
                name=beam.name or f"Beam {beam.number}",
                number=beam.number,
                jaws=beam.jaws,
                gantry_angle=beam.gantry_angle,
                collimator_angle=beam.collimator_angle,
                couch_angle=beam.couch_angle,
                source_axis_distance=beam.source_axis_distance,
                plan_id=plan_id,
            )
            beam_ids.append(tx.add_entity(beam_node))
        plan_node.beam_ids = beam_ids

        plan_item = tx.create_item(hierarchy.scene_item_id, name, Level.SERIES, plan_id)
        referenced = ([plan.referenced_structure_set_uid] if plan.referenced_structure_set_uid else [])
        referenced += plan.referenced_dose_uids
        hierarchy.set_attribute(plan_item, REFERENCED_INSTANCE_UIDS_ATTRIBUTE, " ".join(referenced))
        for beam_id in beam_ids:
            tx.create_item(plan_item, store.get(beam_id).name, Level.SERIES, beam_id)

        _place_in_series(hierarchy, plan_item, plan.identity, config)

        if geometry is not None:
            for beam_id in beam_ids:
                geometry.setup_from_beam(beam_id)

    result = _run("RT plan", hierarchy, store, body)
    if result:
        logger.info("Loaded plan '%s' with %d beam(s)", name, len(plan.beams))
    return result


# --- RT structure set -----------------------------------------------------------


def load_rt_structure_set(
    structure_set: RTStructureSetObject,
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    config: Optional[ImportExportConfig] = None,
    name: Optional[str] = None,
) -> LoadResult:
    config = config or ImportExportConfig()
    name = name or ("RTSTRUCT: " + structure_set.label if structure_set.label else "RTSTRUCT")

    def body(tx: _Transaction) -> None:
        fiducial_folder = INVALID_ITEM_ID
        segmentation_item = INVALID_ITEM_ID
        segmentation_node: Optional[SegmentationNode] = None
        referenced_series_uid = ""
        maximum_points = -1
        total_points = 0

        for roi in structure_set.rois:
            count = roi.point_count
            if count == 0:
                logger.warning(
                    "Structure ROI data does not contain any points for ROI named '%s' in '%s'",
                    roi.name or "Unnamed", name,
                )
                continue
            maximum_points = max(maximum_points, count)
            total_points += count

            if not referenced_series_uid:
                referenced_series_uid = roi.referenced_series_uid
            elif roi.referenced_series_uid and roi.referenced_series_uid.lower() != referenced_series_uid.lower():
                logger.warning("ROIs in structure set '%s' have different referenced series UIDs", name)

            if count == 1:
                if fiducial_folder == INVALID_ITEM_ID:
                    fiducial_folder = tx.create_item(
                        hierarchy.scene_item_id, name + FIDUCIALS_FOLDER_POSTFIX, Level.FOLDER
                    )
                point = next(c for c in roi.contours if len(c))[0]
                markups = MarkupsNode(
                    name=roi.name,
                    points=np.asarray(point, dtype=float).reshape(1, 3),
                    color=roi.color,
                    locked=True,
                    visible=False,
                )
                markups_id = tx.add_entity(markups)
                item = tx.create_item(fiducial_folder, roi.name, Level.SERIES, markups_id)
                hierarchy.set_attribute(item, ROI_REFERENCED_SERIES_UID_ATTRIBUTE, roi.referenced_series_uid)
                continue

            if segmentation_node is None:
                segmentation = Segmentation(
                    master_representation=PLANAR_CONTOUR,
                    rasterization_spacing_mm=config.contour_rasterization_spacing_mm,
                )
                reference_item = hierarchy.find_by_uid(DICOM_UID_NAME, roi.referenced_series_uid)
                if reference_item != INVALID_ITEM_ID:
                    reference = store.get(hierarchy.item(reference_item).entity_id)
                    if isinstance(reference, VolumeNode):
                        segmentation.reference_geometry = _volume_geometry(reference)
                    else:
                        logger.error("Referenced volume series item does not contain a volume")
                segmentation_node = SegmentationNode(name=name, segmentation=segmentation)
                segmentation_id = tx.add_entity(segmentation_node)
                segmentation_item = tx.create_item(hierarchy.scene_item_id, name, Level.SERIES, segmentation_id)
                hierarchy.set_attribute(segmentation_item, ROI_REFERENCED_SERIES_UID_ATTRIBUTE, referenced_series_uid)
                hierarchy.set_attribute(
                    segmentation_item,
                    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
                    " ".join(structure_set.referenced_instance_uids),
                )

            segment = Segment(
                name=roi.name,
                color=roi.color,
                representations={PLANAR_CONTOUR: [np.array(c, dtype=float) for c in roi.contours if len(c)]},
            )
            segmentation_node.segmentation.add_segment(segment)

        if segmentation_node is not None:
            logger.debug(
                "Maximum number of points in a segment = %d, total number of points in segmentation = %d",
                maximum_points, total_points,
            )
            if maximum_points < config.max_points_per_segment and total_points < config.max_total_points:
                if segmentation_node.segmentation.create_representation(CLOSED_SURFACE):
                    segmentation_node.display_representation_3d = CLOSED_SURFACE
                    segmentation_node.display_representation_2d = CLOSED_SURFACE
                else:
                    logger.warning("Closed surface could not be derived for structure set '%s'", name)
                    segmentation_node.display_representation_3d = PLANAR_CONTOUR
                    segmentation_node.display_representation_2d = PLANAR_CONTOUR
            else:
                logger.warning(
                    "Structure set '%s' contains extremely large contours; no closed surface "
                    "representation is created and the raw planar contours are shown",
                    name,
                )
                segmentation_node.display_representation_3d = PLANAR_CONTOUR
                segmentation_node.display_representation_2d = PLANAR_CONTOUR

        data_item = segmentation_item if segmentation_item != INVALID_ITEM_ID else fiducial_folder
        if data_item != INVALID_ITEM_ID:
            series_item = _place_in_series(hierarchy, data_item, structure_set.identity, config)
        else:
            series_item = insert_series_in_hierarchy(hierarchy, structure_set.identity, config)
        if segmentation_item != INVALID_ITEM_ID and fiducial_folder != INVALID_ITEM_ID:
            hierarchy.set_item_parent(fiducial_folder, hierarchy.parent(series_item))

    result = _run("RT structure set", hierarchy, store, body)
    if result:
        logger.info("Loaded structure set '%s' (%d ROI(s))", name, len(structure_set.rois))
    return result


def _volume_geometry(volume: VolumeNode) -> ImageGeometry:
    return ImageGeometry(tuple(volume.array.shape), np.array(volume.ijk_to_ras, dtype=float))


def referenced_volume_for_segmentation(
    hierarchy: SubjectHierarchy, store: EntityStore, segmentation_item: int
) -> Optional[VolumeNode]:
    """Volume whose series the structure set's ROIs reference, if it is loaded."""
    series_uid = hierarchy.attribute(segmentation_item, ROI_REFERENCED_SERIES_UID_ATTRIBUTE)
    if not series_uid:
        logger.error("No referenced series UID found for segmentation '%s'", hierarchy.name(segmentation_item))
        return None
    item = hierarchy.find_by_uid(DICOM_UID_NAME, series_uid)
    if item == INVALID_ITEM_ID:
        return None
    entity = store.get(hierarchy.item(item).entity_id)
    return entity if isinstance(entity, VolumeNode) else None


# --- RT image -----------------------------------------------------------------


def load_rt_image(
    image: RTImageObject,
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    config: Optional[ImportExportConfig] = None,
    geometry: Optional[RtImageGeometry] = None,
    name: Optional[str] = None,
) -> LoadResult:
    config = config or ImportExportConfig()
    name = name or ("RTIMAGE: " + image.label if image.label else "RTIMAGE")
    item_holder: List[int] = []

    def body(tx: _Transaction) -> None:
        if image.window_center == 0.0 and image.window_width == 0.0:
            display = VolumeDisplay(auto_window_level=True)
        else:
            display = VolumeDisplay(
                window=image.window_width, level=image.window_center, auto_window_level=False
            )
        volume = VolumeNode(
            name=name,
            array=np.asarray(image.pixels),
            ijk_to_ras=np.array(image.ijk_to_ras, dtype=float),
            kind=EntityKind.RT_IMAGE,
            display=display,
        )
        entity_id = tx.add_entity(volume)
        item = tx.create_item(hierarchy.scene_item_id, name, Level.SERIES, entity_id)
        hierarchy.set_attribute(item, RTIMAGE_IDENTIFIER_ATTRIBUTE, "1")
        hierarchy.set_attribute(item, REFERENCED_INSTANCE_UIDS_ATTRIBUTE, image.referenced_plan_uid or "")
        hierarchy.set_attribute(item, SOURCE_AXIS_DISTANCE_ATTRIBUTE, format_number(image.source_axis_distance))
        hierarchy.set_attribute(item, GANTRY_ANGLE_ATTRIBUTE, format_number(image.gantry_angle))
        hierarchy.set_attribute(item, COUCH_ANGLE_ATTRIBUTE, format_number(image.couch_angle))
        hierarchy.set_attribute(item, COLLIMATOR_ANGLE_ATTRIBUTE, format_number(image.collimator_angle))
        hierarchy.set_attribute(
            item,
            BEAM_NUMBER_ATTRIBUTE,
            str(image.referenced_beam_number) if image.referenced_beam_number is not None else "",
        )
        hierarchy.set_attribute(item, RTIMAGE_SID_ATTRIBUTE, format_number(image.sid))
        x, y = image.image_plane_position
        hierarchy.set_attribute(item, RTIMAGE_POSITION_ATTRIBUTE, f"{format_number(x)} {format_number(y)}")

        _place_in_series(hierarchy, item, image.identity, config)
        item_holder.append(item)

    result = _run("RT image", hierarchy, store, body)
    if result and geometry is not None:
        geometry.setup_from_image(item_holder[0])
    if result:
        logger.info("Loaded RT image '%s'", name)
    return result


# --- Anatomical image series ----------------------------------------------------


def _sort_slices(paths: Iterable[Path]) -> List[tuple]:
    """(path, dataset) pairs ordered along the slice normal."""
    entries = []
    for p in paths:
        ds = read_dicom(p, stop_before_pixels=True)
        if ds is None:
            continue
        entries.append((Path(p), ds))

    def _key(entry):
        ds = entry[1]
        position = getattr(ds, "ImagePositionPatient", None)
        orientation = getattr(ds, "ImageOrientationPatient", None)
        if position is None or orientation is None:
            number = getattr(ds, "InstanceNumber", None)
            return float(number) if number is not None else 0.0
        normal = np.cross([float(v) for v in orientation[:3]], [float(v) for v in orientation[3:]])
        return float(np.dot(normal, [float(v) for v in position]))

    entries.sort(key=_key)
    return entries


def load_image_series(
    paths: Iterable[Path],
    hierarchy: SubjectHierarchy,
    store: EntityStore,
    config: Optional[ImportExportConfig] = None,
    name: Optional[str] = None,
) -> LoadResult:
    """Load an anatomical CT/MR series; slice instance UIDs are kept for export."""
    config = config or ImportExportConfig()
    entries = _sort_slices(paths)
    if not entries:
        logger.error("No readable slices given for image series")
        return LoadResult(False, [])
    first = entries[0][1]
    identity = read_identity(first)
    name = name or identity.series_description or f"{identity.series_modality or 'Image'} series"

    def body(tx: _Transaction) -> None:
        reader = sitk.ImageSeriesReader()
        reader.SetFileNames([str(p) for p, _ in entries])
        img = reader.Execute()
        array = sitk.GetArrayFromImage(img)  # [z, y, x]
        ijk_to_lps = geometry_matrix(
            img.GetOrigin(), img.GetSpacing(), np.asarray(img.GetDirection(), dtype=float).reshape(3, 3)
        )
        volume = VolumeNode(name=name, array=array, ijk_to_ras=LPS_TO_RAS @ ijk_to_lps, kind=EntityKind.VOLUME)
        entity_id = tx.add_entity(volume)
        item = tx.create_item(hierarchy.scene_item_id, name, Level.SERIES, entity_id)
        hierarchy.set_uid(item, DICOM_UID_NAME, identity.series_instance_uid)

        insert_series_in_hierarchy(hierarchy, replace(identity, sop_instance_uid=""), config)
        slice_uids = [get_str(ds, "SOPInstanceUID") for _, ds in entries]
        hierarchy.set_uid(item, DICOM_INSTANCE_UID_NAME, " ".join(uid for uid in slice_uids if uid))

        for segmentation in store.of_kind(EntityKind.SEGMENTATION):
            seg_item = hierarchy.item_by_entity(segmentation.id)
            if seg_item == INVALID_ITEM_ID:
                continue
            if (
                segmentation.segmentation.reference_geometry is None
                and hierarchy.attribute(seg_item, ROI_REFERENCED_SERIES_UID_ATTRIBUTE) == identity.series_instance_uid
            ):
                segmentation.segmentation.reference_geometry = _volume_geometry(volume)

    result = _run("image series", hierarchy, store, body)
    if result:
        logger.info("Loaded image series '%s' (%d slice(s))", name, len(entries))
    return result


# --- Session --------------------------------------------------------------------


class LoadSession:
    """Hierarchy, entity store and geometry engine shared by consecutive loads."""

    def __init__(self, config: Optional[ImportExportConfig] = None):
        self.config = config or ImportExportConfig()
        self.hierarchy = SubjectHierarchy()
        self.store = EntityStore()
        self.geometry = RtImageGeometry(self.hierarchy, self.store)
        self.index: Optional[DicomIndex] = None
        if self.config.dicom_index_path is not None and Path(self.config.dicom_index_path).exists():
            self.index = DicomIndex.load(Path(self.config.dicom_index_path))

    def load(self, loadable: Loadable) -> bool:
        if not loadable.files or loadable.confidence == 0.0:
            logger.error("Unable to load DICOM-RT data due to invalid loadable information")
            return False
        path = Path(loadable.files[0])
        logger.info("Loading series '%s' from file '%s'", loadable.name, path)
        try:
            rt_object = read_rt_object(read_dicom(path), path)
        except Exception:
            logger.exception("Failed to read RT object from %s", path)
            return False
        if rt_object is None:
            logger.error("File %s does not contain a supported RT object", path)
            return False

        if isinstance(rt_object, RTStructureSetObject):
            result = load_rt_structure_set(rt_object, self.hierarchy, self.store, self.config, loadable.name)
        elif isinstance(rt_object, RTDoseObject):
            result = load_rt_dose(rt_object, self.hierarchy, self.store, self.config, loadable.name)
        elif isinstance(rt_object, RTPlanObject):
            result = load_rt_plan(
                rt_object, self.hierarchy, self.store, self.config, self.geometry, loadable.name
            )
        else:
            result = load_rt_image(
                rt_object, self.hierarchy, self.store, self.config, self.geometry, loadable.name
            )
        return result.success

    def load_image_series(self, paths: Iterable[Path], name: Optional[str] = None) -> LoadResult:
        return load_image_series(paths, self.hierarchy, self.store, self.config, name)

    def load_directory(self, root: Path) -> Dict[str, int]:
        """Load anatomical series first, then every RT object found under ``root``."""
        files = list_files(Path(root))
        series: Dict[str, List[Path]] = {}
        rt_files: List[Path] = []
        for p in files:
            ds = read_dicom(p, stop_before_pixels=True)
            if ds is None:
                continue
            sop_class = get_str(ds, "SOPClassUID")
            if sop_class in RT_SOP_CLASSES:
                rt_files.append(p)
            elif get_str(ds, "Modality") in IMAGE_SERIES_MODALITIES and get_str(ds, "SeriesInstanceUID"):
                series.setdefault(get_str(ds, "SeriesInstanceUID"), []).append(p)

        summary = {"image_series": 0, "rt_objects": 0, "failed": 0}
        for series_uid, paths in series.items():
            if self.load_image_series(paths):
                summary["image_series"] += 1
            else:
                summary["failed"] += 1
        for loadable in examine_files(rt_files, self.index):
            if self.load(loadable):
                summary["rt_objects"] += 1
            else:
                summary["failed"] += 1
        logger.info(
            "Loaded %d image series and %d RT object(s) from %s (%d failed)",
            summary["image_series"], summary["rt_objects"], root, summary["failed"],
        )
        return summary
