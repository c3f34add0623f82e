from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
from pydicom.dataset import Dataset

from .constants import (
    RT_DOSE_STORAGE,
    RT_IMAGE_STORAGE,
    RT_PLAN_STORAGE,
    RT_STRUCTURE_SET_STORAGE,
)
from .objects import (
    DicomIdentity,
    RTBeam,
    RTDoseObject,
    RTImageObject,
    RTPlanObject,
    RTRoi,
    RTStructureSetObject,
)
from .utils import LPS_TO_RAS, first_item, get, get_float, get_str, iter_items

logger = logging.getLogger(__name__)

RTObject = Union[RTDoseObject, RTPlanObject, RTStructureSetObject, RTImageObject]


def lps_point_to_ras(point) -> tuple[float, float, float]:
    x, y, z = (float(v) for v in point)
    return (-x, -y, z)


def read_identity(ds: Dataset) -> DicomIdentity:
    return DicomIdentity(
        patient_name=get_str(ds, "PatientName"),
        patient_id=get_str(ds, "PatientID"),
        patient_sex=get_str(ds, "PatientSex"),
        patient_birth_date=get_str(ds, "PatientBirthDate"),
        patient_comments=get_str(ds, "PatientComments"),
        study_instance_uid=get_str(ds, "StudyInstanceUID"),
        study_id=get_str(ds, "StudyID"),
        study_description=get_str(ds, "StudyDescription"),
        study_date=get_str(ds, "StudyDate"),
        study_time=get_str(ds, "StudyTime"),
        series_instance_uid=get_str(ds, "SeriesInstanceUID"),
        series_modality=get_str(ds, "Modality"),
        series_number=get_str(ds, "SeriesNumber"),
        series_description=get_str(ds, "SeriesDescription"),
        sop_instance_uid=get_str(ds, "SOPInstanceUID"),
        frame_of_reference_uid=get_str(ds, "FrameOfReferenceUID"),
    )


def _pixels_as_volume(ds: Dataset) -> np.ndarray:
    arr = np.asarray(ds.pixel_array)
    frames = int(get_float(ds, "NumberOfFrames", 1.0) or 1)
    if arr.ndim == 2:
        arr = arr[np.newaxis, ...]
    elif arr.ndim == 3 and frames == 1 and arr.shape[-1] in (3, 4):
        raise ValueError("Color pixel data is not supported for RT objects")
    return arr


def _volume_ijk_to_ras(ds: Dataset, slice_offsets: Optional[List[float]] = None) -> np.ndarray:
    """IJK to RAS for a grid described by position/orientation/pixel spacing (LPS in the dataset)."""
    position = [float(v) for v in (get(ds, "ImagePositionPatient") or (0.0, 0.0, 0.0))]
    orientation = [float(v) for v in (get(ds, "ImageOrientationPatient") or (1, 0, 0, 0, 1, 0))]
    spacing = [float(v) for v in (get(ds, "PixelSpacing") or (1.0, 1.0))]
    row_dir = np.asarray(orientation[:3])
    col_dir = np.asarray(orientation[3:])
    normal = np.cross(row_dir, col_dir)

    slice_spacing = 1.0
    if slice_offsets and len(slice_offsets) > 1:
        slice_spacing = float(slice_offsets[1]) - float(slice_offsets[0])
    elif get(ds, "SliceThickness") not in (None, ""):
        slice_spacing = get_float(ds, "SliceThickness", 1.0) or 1.0

    ijk_to_lps = np.eye(4)
    # PixelSpacing is (row spacing, column spacing); i runs along a row
    ijk_to_lps[:3, 0] = row_dir * spacing[1]
    ijk_to_lps[:3, 1] = col_dir * spacing[0]
    ijk_to_lps[:3, 2] = normal * slice_spacing
    ijk_to_lps[:3, 3] = position
    return LPS_TO_RAS @ ijk_to_lps


def _first_referenced_plan_uid(ds: Dataset) -> Optional[str]:
    ref = first_item(ds, "ReferencedRTPlanSequence")
    if ref is None:
        return None
    uid = get_str(ref, "ReferencedSOPInstanceUID")
    return uid or None


def read_rt_dose(ds: Dataset, path: Optional[Path] = None) -> RTDoseObject:
    offsets = [float(v) for v in (get(ds, "GridFrameOffsetVector") or [])]
    voxels = _pixels_as_volume(ds)
    return RTDoseObject(
        identity=read_identity(ds),
        voxels=voxels,
        ijk_to_ras=_volume_ijk_to_ras(ds, offsets),
        grid_scaling=get_float(ds, "DoseGridScaling", 0.0),
        dose_units=get_str(ds, "DoseUnits"),
        dose_type=get_str(ds, "DoseType"),
        referenced_plan_uid=_first_referenced_plan_uid(ds),
        instance_number=get_str(ds, "InstanceNumber"),
        path=path,
    )


def _beam_jaws(control_point: Optional[Dataset]):
    x_jaw = (0.0, 0.0)
    y_jaw = (0.0, 0.0)
    for device in iter_items(control_point, "BeamLimitingDevicePositionSequence"):
        kind = get_str(device, "RTBeamLimitingDeviceType").upper()
        positions = [float(v) for v in (get(device, "LeafJawPositions") or [])]
        if len(positions) != 2:
            continue
        if kind in ("X", "ASYMX"):
            x_jaw = (positions[0], positions[1])
        elif kind in ("Y", "ASYMY"):
            y_jaw = (positions[0], positions[1])
    return (x_jaw, y_jaw)


def read_rt_plan(ds: Dataset, path: Optional[Path] = None) -> RTPlanObject:
    beams: List[RTBeam] = []
    beam_items = list(iter_items(ds, "BeamSequence")) or list(iter_items(ds, "IonBeamSequence"))
    for beam in beam_items:
        cp = first_item(beam, "ControlPointSequence")
        iso = get(cp, "IsocenterPosition") if cp is not None else None
        beams.append(
            RTBeam(
                number=int(get_float(beam, "BeamNumber", 0)),
                name=get_str(beam, "BeamName"),
                description=get_str(beam, "BeamDescription"),
                jaws=_beam_jaws(cp),
                gantry_angle=get_float(cp, "GantryAngle") if cp is not None else 0.0,
                collimator_angle=get_float(cp, "BeamLimitingDeviceAngle") if cp is not None else 0.0,
                couch_angle=get_float(cp, "PatientSupportAngle") if cp is not None else 0.0,
                source_axis_distance=get_float(beam, "SourceAxisDistance", 1000.0),
                isocenter=lps_point_to_ras(iso) if iso else (0.0, 0.0, 0.0),
            )
        )

    struct_ref = first_item(ds, "ReferencedStructureSetSequence")
    dose_uids = [
        get_str(item, "ReferencedSOPInstanceUID")
        for item in iter_items(ds, "ReferencedDoseSequence")
        if get_str(item, "ReferencedSOPInstanceUID")
    ]
    return RTPlanObject(
        identity=read_identity(ds),
        label=get_str(ds, "RTPlanLabel"),
        name=get_str(ds, "RTPlanName"),
        beams=beams,
        referenced_structure_set_uid=(get_str(struct_ref, "ReferencedSOPInstanceUID") or None) if struct_ref is not None else None,
        referenced_dose_uids=dose_uids,
        path=path,
    )


def structure_set_referenced_uids(ds: Dataset) -> List[str]:
    """Distinct referenced image SOP instance UIDs of a structure set, first-seen order.

    The per-ROI contour image chain is authoritative; when it yields nothing the
    first series of the structure-set level frame of reference chain is used.
    """
    uids: List[str] = []

    def _add(item: Dataset) -> None:
        uid = get_str(item, "ReferencedSOPInstanceUID")
        if uid and uid not in uids:
            uids.append(uid)

    for roi in iter_items(ds, "ROIContourSequence"):
        for contour in iter_items(roi, "ContourSequence"):
            for image in iter_items(contour, "ContourImageSequence"):
                _add(image)
    if uids:
        return uids

    frame = first_item(ds, "ReferencedFrameOfReferenceSequence")
    study = first_item(frame, "RTReferencedStudySequence")
    series = first_item(study, "RTReferencedSeriesSequence")
    for image in iter_items(series, "ContourImageSequence"):
        _add(image)
    return uids


def _series_by_frame_of_reference(ds: Dataset) -> dict[str, str]:
    out: dict[str, str] = {}
    for frame in iter_items(ds, "ReferencedFrameOfReferenceSequence"):
        for_uid = get_str(frame, "FrameOfReferenceUID")
        for study in iter_items(frame, "RTReferencedStudySequence"):
            series = first_item(study, "RTReferencedSeriesSequence")
            uid = get_str(series, "SeriesInstanceUID") if series is not None else ""
            if uid and for_uid not in out:
                out[for_uid] = uid
    return out


def read_rt_structure_set(ds: Dataset, path: Optional[Path] = None) -> RTStructureSetObject:
    series_by_for = _series_by_frame_of_reference(ds)
    default_series = next(iter(series_by_for.values()), "")

    rois: dict[int, RTRoi] = {}
    order: List[int] = []
    for item in iter_items(ds, "StructureSetROISequence"):
        number = int(get_float(item, "ROINumber", 0))
        for_uid = get_str(item, "ReferencedFrameOfReferenceUID")
        rois[number] = RTRoi(
            number=number,
            name=get_str(item, "ROIName") or f"ROI_{number}",
            referenced_series_uid=series_by_for.get(for_uid, default_series),
        )
        order.append(number)

    for item in iter_items(ds, "ROIContourSequence"):
        number = int(get_float(item, "ReferencedROINumber", 0))
        roi = rois.get(number)
        if roi is None:
            logger.warning("Contour references unknown ROI number %s", number)
            continue
        color = get(item, "ROIDisplayColor")
        if color and len(color) == 3:
            roi.color = tuple(float(c) / 255.0 for c in color)
        for contour in iter_items(item, "ContourSequence"):
            data = get(contour, "ContourData")
            if not data:
                continue
            pts = np.asarray([float(v) for v in data], dtype=float).reshape(-1, 3)
            pts[:, :2] *= -1.0
            roi.contours.append(pts)

    return RTStructureSetObject(
        identity=read_identity(ds),
        label=get_str(ds, "StructureSetLabel"),
        rois=[rois[n] for n in order],
        referenced_instance_uids=structure_set_referenced_uids(ds),
        path=path,
    )


def _first_number(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value[0]) if not isinstance(value, (str, bytes)) and hasattr(value, "__len__") else float(value)
    except (TypeError, ValueError, IndexError):
        return default


def read_rt_image(ds: Dataset, path: Optional[Path] = None) -> RTImageObject:
    pixels = _pixels_as_volume(ds)
    spacing = get(ds, "ImagePlanePixelSpacing") or get(ds, "PixelSpacing") or (1.0, 1.0)
    row_spacing, col_spacing = float(spacing[0]), float(spacing[1])
    # Pixel grid at the origin; placement comes from the beam geometry
    ijk_to_ras = LPS_TO_RAS @ np.diag([col_spacing, row_spacing, 1.0, 1.0])

    position = [float(v) for v in (get(ds, "RTImagePosition") or (0.0, 0.0))]
    beam_number = get(ds, "ReferencedBeamNumber")
    if beam_number in (None, ""):
        exposure = first_item(ds, "ExposureSequence")
        beam_number = get(exposure, "ReferencedBeamNumber") if exposure is not None else None

    return RTImageObject(
        identity=read_identity(ds),
        pixels=pixels,
        ijk_to_ras=ijk_to_ras,
        label=get_str(ds, "RTImageLabel"),
        window_center=_first_number(get(ds, "WindowCenter")),
        window_width=_first_number(get(ds, "WindowWidth")),
        sid=get_float(ds, "RTImageSID", 0.0),
        image_plane_position=(position[0], position[1]) if len(position) >= 2 else (0.0, 0.0),
        gantry_angle=get_float(ds, "GantryAngle", 0.0),
        couch_angle=get_float(ds, "PatientSupportAngle", 0.0),
        collimator_angle=get_float(ds, "BeamLimitingDeviceAngle", 0.0),
        source_axis_distance=get_float(ds, "RadiationMachineSAD", 1000.0),
        referenced_plan_uid=_first_referenced_plan_uid(ds),
        referenced_beam_number=int(beam_number) if beam_number not in (None, "") else None,
        path=path,
    )


def read_rt_object(ds: Optional[Dataset], path: Optional[Path] = None) -> Optional[RTObject]:
    """Parse a dataset into the RT object matching its SOP class; None for anything else."""
    if ds is None:
        return None
    sop_class = get_str(ds, "SOPClassUID")
    if sop_class == RT_DOSE_STORAGE:
        return read_rt_dose(ds, path)
    if sop_class == RT_PLAN_STORAGE:
        return read_rt_plan(ds, path)
    if sop_class == RT_STRUCTURE_SET_STORAGE:
        return read_rt_structure_set(ds, path)
    if sop_class == RT_IMAGE_STORAGE:
        return read_rt_image(ds, path)
    logger.debug("Not an RT object (SOP class %s): %s", sop_class or "missing", path)
    return None
