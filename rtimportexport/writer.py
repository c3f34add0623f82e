from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence as SequenceType, Tuple

import numpy as np
import SimpleITK as sitk
from pydicom.dataset import Dataset, FileDataset, FileMetaDataset
from pydicom.sequence import Sequence
from pydicom.uid import ExplicitVRLittleEndian, PYDICOM_IMPLEMENTATION_UID, generate_uid
from pydicom.valuerep import DSfloat

from .constants import CT_IMAGE_STORAGE, RT_DOSE_STORAGE
from .utils import ensure_dir

logger = logging.getLogger(__name__)

MR_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.4"
IMAGE_STORAGE_BY_MODALITY = {"CT": CT_IMAGE_STORAGE, "MR": MR_IMAGE_STORAGE}


def _ds(values):
    """Decimal string value(s) that fit the 16 character DS limit."""
    if np.ndim(values) == 0:
        return DSfloat(float(values), auto_format=True)
    return [DSfloat(float(v), auto_format=True) for v in np.asarray(values, dtype=float).ravel()]


def _color_255(color: SequenceType[float]) -> List[int]:
    return [int(round(max(0.0, min(1.0, float(c))) * 255)) for c in color[:3]]


@dataclass
class ContourStructure:
    name: str
    color: Tuple[float, float, float]
    slice_numbers: List[int]
    slice_uids: List[str]
    # one list of (N, 3) RAS loops per recorded slice
    polygons: List[List[np.ndarray]]


@dataclass
class MaskStructure:
    name: str
    color: Tuple[float, float, float]
    mask: sitk.Image


@dataclass
class DicomRtWriter:
    """Writes an anatomical series, an optional RT dose and an optional RT structure set.

    Images are handed over as SimpleITK images in the DICOM patient (LPS)
    frame; contour polygons are given in RAS and flipped on write.
    """

    output_dir: Path
    patient: Dict[str, str] = field(default_factory=dict)
    study_instance_uid: str = ""
    study_id: str = ""
    image: Optional[sitk.Image] = None
    image_tags: Dict[str, str] = field(default_factory=dict)
    slice_uids: List[str] = field(default_factory=list)
    dose: Optional[sitk.Image] = None
    dose_tags: Dict[str, str] = field(default_factory=dict)
    structure_tags: Dict[str, str] = field(default_factory=dict)
    mask_structures: List[MaskStructure] = field(default_factory=list)
    contour_structures: List[ContourStructure] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.frame_of_reference_uid = generate_uid()
        self.image_series_uid = generate_uid()

    # --- inputs ---------------------------------------------------------------

    def set_patient(self, tags: Dict[str, Optional[str]]) -> None:
        self.patient = {k: v for k, v in tags.items() if v}

    def set_study(self, study_instance_uid: str, study_id: str = "") -> None:
        self.study_instance_uid = study_instance_uid
        self.study_id = study_id

    def set_image(
        self,
        image: sitk.Image,
        slice_uids: Optional[List[str]] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        depth = image.GetDepth() or 1
        if slice_uids and len(slice_uids) == depth:
            self.slice_uids = list(slice_uids)
        else:
            if slice_uids:
                logger.warning(
                    "Got %d slice UID(s) for %d slice(s); new slice UIDs are generated", len(slice_uids), depth
                )
            self.slice_uids = [generate_uid() for _ in range(depth)]
        self.image = image
        self.image_tags = dict(tags or {})

    def set_dose(self, dose: sitk.Image, tags: Optional[Dict[str, str]] = None) -> None:
        self.dose = dose
        self.dose_tags = dict(tags or {})

    def set_structure_set_tags(self, tags: Optional[Dict[str, str]]) -> None:
        self.structure_tags = dict(tags or {})

    def add_mask_structure(self, mask: sitk.Image, name: str, color: SequenceType[float]) -> None:
        self.mask_structures.append(MaskStructure(name, tuple(color), mask))

    def add_contour_structure(
        self,
        name: str,
        color: SequenceType[float],
        slice_numbers: List[int],
        slice_uids: List[str],
        polygons: List[List[np.ndarray]],
    ) -> None:
        if not (len(slice_numbers) == len(slice_uids) == len(polygons)):
            raise ValueError("Slice numbers, slice UIDs and polygons must have equal length")
        self.contour_structures.append(
            ContourStructure(name, tuple(color), list(slice_numbers), list(slice_uids), list(polygons))
        )

    # --- output ---------------------------------------------------------------

    @property
    def image_dir(self) -> Path:
        return self.output_dir / "CT"

    def write(self) -> List[Path]:
        if self.image is None:
            raise RuntimeError("No anatomical image set")
        ensure_dir(self.output_dir)
        if not self.study_instance_uid:
            self.study_instance_uid = generate_uid()
        written = self._write_image_series()
        if self.dose is not None:
            written.append(self._write_dose())
        if self.mask_structures or self.contour_structures:
            written.append(self._write_structure_set())
        logger.info("Wrote %d DICOM file(s) to %s", len(written), self.output_dir)
        return written

    def _new_dataset(self, sop_class_uid: str, sop_instance_uid: str, path: Path) -> FileDataset:
        meta = FileMetaDataset()
        meta.MediaStorageSOPClassUID = sop_class_uid
        meta.MediaStorageSOPInstanceUID = sop_instance_uid
        meta.TransferSyntaxUID = ExplicitVRLittleEndian
        meta.ImplementationClassUID = PYDICOM_IMPLEMENTATION_UID
        ds = FileDataset(str(path), {}, file_meta=meta, preamble=b"\0" * 128)
        ds.SOPClassUID = sop_class_uid
        ds.SOPInstanceUID = sop_instance_uid

        now = datetime.datetime.now()
        ds.InstanceCreationDate = now.strftime("%Y%m%d")
        ds.InstanceCreationTime = now.strftime("%H%M%S")
        ds.PatientName = self.patient.get("PatientName", "")
        ds.PatientID = self.patient.get("PatientID", "")
        ds.PatientSex = self.patient.get("PatientSex", "")
        ds.PatientBirthDate = ""
        ds.StudyInstanceUID = self.study_instance_uid
        ds.StudyID = self.study_id
        ds.StudyDate = self.patient.get("StudyDate", "")
        ds.StudyTime = self.patient.get("StudyTime", "")
        ds.StudyDescription = self.patient.get("StudyDescription", "")
        ds.FrameOfReferenceUID = self.frame_of_reference_uid
        return ds

    @staticmethod
    def _set_plane_geometry(ds: Dataset, image: sitk.Image) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        origin = np.asarray(image.GetOrigin(), dtype=float)
        spacing = np.asarray(image.GetSpacing(), dtype=float)
        direction = np.asarray(image.GetDirection(), dtype=float).reshape(3, 3)
        ds.ImageOrientationPatient = _ds(np.r_[direction[:, 0], direction[:, 1]])
        ds.PixelSpacing = _ds([spacing[1], spacing[0]])
        ds.SliceThickness = _ds(spacing[2] if len(spacing) > 2 else 1.0)
        ds.Rows = image.GetHeight()
        ds.Columns = image.GetWidth()
        ds.SamplesPerPixel = 1
        ds.PhotometricInterpretation = "MONOCHROME2"
        return origin, spacing, direction

    def _write_image_series(self) -> List[Path]:
        image = self.image
        modality = self.image_tags.get("Modality") or "CT"
        sop_class = IMAGE_STORAGE_BY_MODALITY.get(modality, CT_IMAGE_STORAGE)
        arr = sitk.GetArrayFromImage(image)  # [z, y, x]
        if arr.ndim == 2:
            arr = arr[None]
        pixels = np.clip(np.rint(arr), -32768, 32767).astype(np.int16)

        out_dir = self.image_dir
        ensure_dir(out_dir)
        written: List[Path] = []
        for k in range(pixels.shape[0]):
            path = out_dir / f"{modality}_{k + 1:04d}.dcm"
            ds = self._new_dataset(sop_class, self.slice_uids[k], path)
            ds.Modality = modality
            ds.SeriesInstanceUID = self.image_series_uid
            ds.SeriesNumber = self.image_tags.get("SeriesNumber") or "1"
            ds.SeriesDescription = self.image_tags.get("SeriesDescription", "")
            ds.InstanceNumber = k + 1
            origin, spacing, direction = self._set_plane_geometry(ds, image)
            position = origin + k * spacing[2] * direction[:, 2]
            ds.ImagePositionPatient = _ds(position)
            ds.SliceLocation = _ds(float(position @ direction[:, 2]))
            ds.BitsAllocated = 16
            ds.BitsStored = 16
            ds.HighBit = 15
            ds.PixelRepresentation = 1
            ds.RescaleIntercept = "0"
            ds.RescaleSlope = "1"
            ds.PixelData = pixels[k].tobytes()
            ds.save_as(str(path), enforce_file_format=True)
            written.append(path)
        logger.debug("Wrote %d %s slice(s)", len(written), modality)
        return written

    def _write_dose(self) -> Path:
        dose = self.dose
        arr = sitk.GetArrayFromImage(dose).astype(np.float64)  # [z, y, x]
        if arr.ndim == 2:
            arr = arr[None]
        max_dose = float(np.nanmax(arr)) if arr.size else 0.0
        scaling = max_dose / float(np.iinfo(np.uint32).max) if max_dose > 0 else 1.0
        stored = np.rint(np.clip(np.nan_to_num(arr, nan=0.0), 0.0, None) / scaling).astype(np.uint32)

        path = self.output_dir / "RD.dcm"
        ds = self._new_dataset(RT_DOSE_STORAGE, generate_uid(), path)
        ds.Modality = "RTDOSE"
        ds.SeriesInstanceUID = generate_uid()
        ds.SeriesNumber = self.dose_tags.get("SeriesNumber") or "1"
        ds.SeriesDescription = self.dose_tags.get("SeriesDescription", "")
        origin, spacing, direction = self._set_plane_geometry(ds, dose)
        ds.ImagePositionPatient = _ds(origin)
        ds.NumberOfFrames = stored.shape[0]
        ds.FrameIncrementPointer = (0x3004, 0x000C)
        ds.GridFrameOffsetVector = _ds([k * spacing[2] for k in range(stored.shape[0])])
        ds.DoseUnits = self.dose_tags.get("DoseUnits") or "GY"
        ds.DoseType = self.dose_tags.get("DoseType") or "PHYSICAL"
        ds.DoseSummationType = self.dose_tags.get("DoseSummationType") or "PLAN"
        ds.DoseGridScaling = _ds(scaling)
        ds.BitsAllocated = 32
        ds.BitsStored = 32
        ds.HighBit = 31
        ds.PixelRepresentation = 0
        ds.PixelData = stored.tobytes()
        ds.save_as(str(path), enforce_file_format=True)
        return path

    def _write_structure_set(self) -> Path:
        from rt_utils import RTStructBuilder

        rtstruct = RTStructBuilder.create_new(dicom_series_path=str(self.image_dir))
        if self.structure_tags.get("SeriesDescription"):
            rtstruct.ds.SeriesDescription = self.structure_tags["SeriesDescription"]
        if self.structure_tags.get("SeriesNumber"):
            rtstruct.ds.SeriesNumber = self.structure_tags["SeriesNumber"]

        for structure in self.mask_structures:
            mask = sitk.GetArrayFromImage(structure.mask) > 0  # [z, y, x]
            if not mask.any():
                logger.warning("Skipping empty structure %s", structure.name)
                continue
            # rt-utils expects [y, x, z]
            rtstruct.add_roi(mask=np.moveaxis(mask, 0, -1), name=structure.name, color=_color_255(structure.color))

        for structure in self.contour_structures:
            self._append_contour_structure(rtstruct.ds, structure)

        path = self.output_dir / "RS.dcm"
        rtstruct.save(str(path))
        return path

    def _append_contour_structure(self, ds: Dataset, structure: ContourStructure) -> None:
        roi_sequence = getattr(ds, "StructureSetROISequence", None)
        if roi_sequence is None:
            ds.StructureSetROISequence = Sequence()
            roi_sequence = ds.StructureSetROISequence
        if getattr(ds, "ROIContourSequence", None) is None:
            ds.ROIContourSequence = Sequence()
        if getattr(ds, "RTROIObservationsSequence", None) is None:
            ds.RTROIObservationsSequence = Sequence()

        number = max((int(r.ROINumber) for r in roi_sequence), default=0) + 1
        sop_class = IMAGE_STORAGE_BY_MODALITY.get(self.image_tags.get("Modality") or "CT", CT_IMAGE_STORAGE)

        roi = Dataset()
        roi.ROINumber = number
        roi.ReferencedFrameOfReferenceUID = self.frame_of_reference_uid
        roi.ROIName = structure.name
        roi.ROIGenerationAlgorithm = ""
        roi_sequence.append(roi)

        roi_contour = Dataset()
        roi_contour.ROIDisplayColor = _color_255(structure.color)
        roi_contour.ReferencedROINumber = number
        roi_contour.ContourSequence = Sequence()
        for uid, loops in zip(structure.slice_uids, structure.polygons):
            for loop in loops:
                points = np.asarray(loop, dtype=float) * np.array([-1.0, -1.0, 1.0])  # RAS -> LPS
                contour = Dataset()
                if uid:
                    image_ref = Dataset()
                    image_ref.ReferencedSOPClassUID = sop_class
                    image_ref.ReferencedSOPInstanceUID = uid
                    contour.ContourImageSequence = Sequence([image_ref])
                contour.ContourGeometricType = "CLOSED_PLANAR"
                contour.NumberOfContourPoints = len(points)
                contour.ContourData = _ds(points)
                roi_contour.ContourSequence.append(contour)
        ds.ROIContourSequence.append(roi_contour)

        observation = Dataset()
        observation.ObservationNumber = number
        observation.ReferencedROINumber = number
        observation.RTROIInterpretedType = ""
        observation.ROIInterpreter = ""
        ds.RTROIObservationsSequence.append(observation)
        logger.debug("Added contour structure %s with %d slice(s)", structure.name, len(structure.slice_numbers))
