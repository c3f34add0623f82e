"""Attribute names, UID namespaces and SOP classes shared by import and export.

The string-keyed attributes below are the durable linkage format between the
loaders and the RT image geometry engine; keep the values stable so that
hierarchies built by earlier sessions resolve the same way.
"""
from __future__ import annotations

# UID namespaces on hierarchy items
DICOM_UID_NAME = "DICOM"
DICOM_INSTANCE_UID_NAME = "DICOMInstanceUID"

# Hierarchy item attributes (DICOM tags copied to patient / study / series)
DICOM_ATTRIBUTE_PREFIX = "DICOM."
PATIENT_NAME_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "PatientName"
PATIENT_ID_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "PatientID"
PATIENT_SEX_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "PatientSex"
PATIENT_BIRTH_DATE_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "PatientBirthDate"
PATIENT_COMMENTS_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "PatientComments"
STUDY_INSTANCE_UID_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "StudyInstanceUID"
STUDY_ID_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "StudyID"
STUDY_DESCRIPTION_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "StudyDescription"
STUDY_DATE_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "StudyDate"
STUDY_TIME_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "StudyTime"
SERIES_MODALITY_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "Modality"
SERIES_NUMBER_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "SeriesNumber"
REFERENCED_INSTANCE_UIDS_ATTRIBUTE = DICOM_ATTRIBUTE_PREFIX + "ReferencedInstanceUIDs"

# RT import attributes
RT_ATTRIBUTE_PREFIX = "DicomRtImport."
DOSE_VOLUME_IDENTIFIER_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "DoseVolume"
DOSE_UNIT_NAME_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "DoseUnitName"
DOSE_UNIT_VALUE_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "DoseUnitValue"
RTIMAGE_IDENTIFIER_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "RtImage"
RTIMAGE_SID_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "RtImageSid"
RTIMAGE_POSITION_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "RtImagePosition"
SOURCE_AXIS_DISTANCE_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "SourceAxisDistance"
GANTRY_ANGLE_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "GantryAngle"
COUCH_ANGLE_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "CouchAngle"
COLLIMATOR_ANGLE_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "CollimatorAngle"
BEAM_NUMBER_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "BeamNumber"
ROI_REFERENCED_SERIES_UID_ATTRIBUTE = RT_ATTRIBUTE_PREFIX + "RoiReferencedSeriesUid"

# Node reference role linking an RT image volume to its planar display model
PLANAR_IMAGE_DISPLAYED_MODEL_ROLE = "PlanarImageDisplayedModel"
PLANAR_IMAGE_MODEL_NAME_PREFIX = "PlanarImage_"

FIDUCIALS_FOLDER_POSTFIX = "_Fiducials"
NO_PATIENT_NAME = "No name"
NO_STUDY_DESCRIPTION = "No study description"
NO_SERIES_DESCRIPTION = "No series description"

# SOP classes handled by the examiner and loaders
RT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.481.1"
RT_DOSE_STORAGE = "1.2.840.10008.5.1.4.1.1.481.2"
RT_STRUCTURE_SET_STORAGE = "1.2.840.10008.5.1.4.1.1.481.3"
RT_PLAN_STORAGE = "1.2.840.10008.5.1.4.1.1.481.5"
CT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.2"

RT_SOP_CLASSES = {
    RT_DOSE_STORAGE: "RTDOSE",
    RT_PLAN_STORAGE: "RTPLAN",
    RT_STRUCTURE_SET_STORAGE: "RTSTRUCT",
    RT_IMAGE_STORAGE: "RTIMAGE",
}

