"""
Synthetic DICOM-RT datasets shared by the test modules.

Every builder returns an in-memory pydicom Dataset with file meta information,
so it can be handed to the reader directly or saved with ``write``.
"""

from pathlib import Path

import numpy as np
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.sequence import Sequence
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from rtimportexport.constants import (
    CT_IMAGE_STORAGE,
    RT_DOSE_STORAGE,
    RT_IMAGE_STORAGE,
    RT_PLAN_STORAGE,
    RT_STRUCTURE_SET_STORAGE,
)

PATIENT_ID = "RT-0001"
STUDY_UID = "1.2.826.0.1.3680043.8.498.1"
FRAME_UID = "1.2.826.0.1.3680043.8.498.2"


def base_dataset(sop_class_uid, modality, sop_instance_uid=None, series_uid=None, series_number="1"):
    sop_instance_uid = sop_instance_uid or generate_uid()
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = sop_class_uid
    meta.MediaStorageSOPInstanceUID = sop_instance_uid
    meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = Dataset()
    ds.file_meta = meta
    ds.SOPClassUID = sop_class_uid
    ds.SOPInstanceUID = sop_instance_uid
    ds.Modality = modality
    ds.PatientName = "Test^Patient"
    ds.PatientID = PATIENT_ID
    ds.PatientSex = "O"
    ds.StudyInstanceUID = STUDY_UID
    ds.StudyID = "S1"
    ds.StudyDescription = "Synthetic study"
    ds.StudyDate = "20240101"
    ds.StudyTime = "120000"
    ds.SeriesInstanceUID = series_uid or generate_uid()
    ds.SeriesNumber = series_number
    ds.FrameOfReferenceUID = FRAME_UID
    return ds


def write(ds, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ds.save_as(str(path), enforce_file_format=True)
    return path


def _pixels(ds, array, bits):
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.BitsAllocated = bits
    ds.BitsStored = bits
    ds.HighBit = bits - 1
    ds.PixelRepresentation = 1 if np.issubdtype(array.dtype, np.signedinteger) else 0
    ds.PixelData = np.ascontiguousarray(array).tobytes()


def make_dose(raw, scaling=0.01, plan_uid=None, origin=(0.0, 0.0, 0.0), spacing=(2.0, 2.0, 2.0), units="GY"):
    """RTDOSE with raw uint32 voxels in [frame, row, column] order."""
    raw = np.asarray(raw, dtype=np.uint32)
    ds = base_dataset(RT_DOSE_STORAGE, "RTDOSE", series_number="3")
    ds.SeriesDescription = "Dose"
    ds.ImagePositionPatient = list(origin)
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.PixelSpacing = [spacing[1], spacing[0]]
    ds.Rows, ds.Columns = raw.shape[1], raw.shape[2]
    ds.NumberOfFrames = raw.shape[0]
    ds.FrameIncrementPointer = (0x3004, 0x000C)
    ds.GridFrameOffsetVector = [k * spacing[2] for k in range(raw.shape[0])]
    ds.DoseUnits = units
    ds.DoseType = "PHYSICAL"
    ds.DoseSummationType = "PLAN"
    ds.DoseGridScaling = scaling
    if plan_uid:
        ref = Dataset()
        ref.ReferencedSOPClassUID = RT_PLAN_STORAGE
        ref.ReferencedSOPInstanceUID = plan_uid
        ds.ReferencedRTPlanSequence = Sequence([ref])
    _pixels(ds, raw, 32)
    return ds


def make_plan(beams, sop_instance_uid=None, structure_set_uid=None, dose_uids=()):
    """RTPLAN; each beam is a dict with number, gantry, couch, collimator, isocenter (LPS), sad."""
    ds = base_dataset(RT_PLAN_STORAGE, "RTPLAN", sop_instance_uid=sop_instance_uid, series_number="2")
    ds.RTPlanLabel = "Plan1"
    ds.RTPlanName = "Plan1"
    items = []
    for b in beams:
        beam = Dataset()
        beam.BeamNumber = b["number"]
        beam.BeamName = b.get("name", f"B{b['number']}")
        beam.SourceAxisDistance = b.get("sad", 1000.0)
        cp = Dataset()
        cp.ControlPointIndex = 0
        cp.GantryAngle = b.get("gantry", 0.0)
        cp.PatientSupportAngle = b.get("couch", 0.0)
        cp.BeamLimitingDeviceAngle = b.get("collimator", 0.0)
        cp.IsocenterPosition = list(b.get("isocenter", (0.0, 0.0, 0.0)))
        jaw_x = Dataset()
        jaw_x.RTBeamLimitingDeviceType = "ASYMX"
        jaw_x.LeafJawPositions = [-50.0, 50.0]
        jaw_y = Dataset()
        jaw_y.RTBeamLimitingDeviceType = "ASYMY"
        jaw_y.LeafJawPositions = [-40.0, 40.0]
        cp.BeamLimitingDevicePositionSequence = Sequence([jaw_x, jaw_y])
        beam.ControlPointSequence = Sequence([cp])
        items.append(beam)
    ds.BeamSequence = Sequence(items)
    if structure_set_uid:
        ref = Dataset()
        ref.ReferencedSOPClassUID = RT_STRUCTURE_SET_STORAGE
        ref.ReferencedSOPInstanceUID = structure_set_uid
        ds.ReferencedStructureSetSequence = Sequence([ref])
    dose_refs = []
    for uid in dose_uids:
        ref = Dataset()
        ref.ReferencedSOPClassUID = RT_DOSE_STORAGE
        ref.ReferencedSOPInstanceUID = uid
        dose_refs.append(ref)
    if dose_refs:
        ds.ReferencedDoseSequence = Sequence(dose_refs)
    return ds


def make_rt_image(plan_uid, beam_number, sid=1500.0, position=(-200.0, -200.0), shape=(8, 8), spacing=(1.0, 1.0)):
    ds = base_dataset(RT_IMAGE_STORAGE, "RTIMAGE", series_number="4")
    ds.RTImageLabel = "Portal"
    ds.RTImageSID = sid
    ds.RTImagePosition = list(position)
    ds.ImagePlanePixelSpacing = list(spacing)
    ds.RadiationMachineSAD = 1000.0
    ds.GantryAngle = 90.0
    ds.PatientSupportAngle = 0.0
    ds.BeamLimitingDeviceAngle = 0.0
    ds.ReferencedBeamNumber = beam_number
    ds.Rows, ds.Columns = shape
    ref = Dataset()
    ref.ReferencedSOPClassUID = RT_PLAN_STORAGE
    ref.ReferencedSOPInstanceUID = plan_uid
    ds.ReferencedRTPlanSequence = Sequence([ref])
    _pixels(ds, np.arange(shape[0] * shape[1], dtype=np.uint16).reshape(shape), 16)
    return ds


def make_structure_set(rois, referenced_series_uid, image_uids=()):
    """RTSTRUCT; ``rois`` is a list of (name, color 0..255, [LPS (N, 3) contours])."""
    ds = base_dataset(RT_STRUCTURE_SET_STORAGE, "RTSTRUCT", series_number="5")
    ds.StructureSetLabel = "Structures"

    frame = Dataset()
    frame.FrameOfReferenceUID = FRAME_UID
    study = Dataset()
    study.ReferencedSOPInstanceUID = STUDY_UID
    series = Dataset()
    series.SeriesInstanceUID = referenced_series_uid
    images = []
    for uid in image_uids:
        image = Dataset()
        image.ReferencedSOPClassUID = CT_IMAGE_STORAGE
        image.ReferencedSOPInstanceUID = uid
        images.append(image)
    series.ContourImageSequence = Sequence(images)
    study.RTReferencedSeriesSequence = Sequence([series])
    frame.RTReferencedStudySequence = Sequence([study])
    ds.ReferencedFrameOfReferenceSequence = Sequence([frame])

    roi_items, contour_items = [], []
    for number, (name, color, contours) in enumerate(rois, start=1):
        roi = Dataset()
        roi.ROINumber = number
        roi.ReferencedFrameOfReferenceUID = FRAME_UID
        roi.ROIName = name
        roi_items.append(roi)

        roi_contour = Dataset()
        roi_contour.ReferencedROINumber = number
        roi_contour.ROIDisplayColor = list(color)
        seq = []
        for pts in contours:
            pts = np.asarray(pts, dtype=float).reshape(-1, 3)
            contour = Dataset()
            contour.ContourGeometricType = "POINT" if len(pts) == 1 else "CLOSED_PLANAR"
            contour.NumberOfContourPoints = len(pts)
            contour.ContourData = [float(v) for v in pts.ravel()]
            seq.append(contour)
        roi_contour.ContourSequence = Sequence(seq)
        contour_items.append(roi_contour)
    ds.StructureSetROISequence = Sequence(roi_items)
    ds.ROIContourSequence = Sequence(contour_items)
    return ds


def make_ct_series(directory, shape=(4, 6, 5), spacing=(1.0, 1.0, 2.0), origin=(0.0, 0.0, 0.0)):
    """Write a CT series of ``shape`` [slices, rows, columns]; returns (paths, series UID, slice UIDs)."""
    directory = Path(directory)
    series_uid = generate_uid()
    paths, uids = [], []
    nk, nj, ni = shape
    for k in range(nk):
        ds = base_dataset(CT_IMAGE_STORAGE, "CT", series_uid=series_uid)
        ds.SeriesDescription = "CT"
        ds.InstanceNumber = k + 1
        ds.ImagePositionPatient = [origin[0], origin[1], origin[2] + k * spacing[2]]
        ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
        ds.PixelSpacing = [spacing[1], spacing[0]]
        ds.SliceThickness = spacing[2]
        ds.Rows, ds.Columns = nj, ni
        ds.RescaleIntercept = 0
        ds.RescaleSlope = 1
        _pixels(ds, np.full((nj, ni), 100 + k, dtype=np.int16), 16)
        # reverse file order so the loader has to sort by position
        paths.append(write(ds, directory / f"CT_{nk - k:03d}.dcm"))
        uids.append(ds.SOPInstanceUID)
    return paths, series_uid, uids


def box_contours_lps(x0, x1, y0, y1, zs):
    """One rectangular CLOSED_PLANAR contour per z, in LPS."""
    return [np.array([[x0, y0, z], [x1, y0, z], [x1, y1, z], [x0, y1, z]], dtype=float) for z in zs]
