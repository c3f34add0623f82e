#!/usr/bin/env python3
"""
Tests for the patient / study / series hierarchy.

Usage:
    pytest test_hierarchy.py
"""

import logging

import pytest

from rtimportexport.config import ImportExportConfig
from rtimportexport.constants import (
    DICOM_INSTANCE_UID_NAME,
    DICOM_UID_NAME,
    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
    SERIES_MODALITY_ATTRIBUTE,
    STUDY_DESCRIPTION_ATTRIBUTE,
)
from rtimportexport.hierarchy import INVALID_ITEM_ID, Level, SubjectHierarchy, insert_series_in_hierarchy
from rtimportexport.objects import DicomIdentity

logger = logging.getLogger(__name__)


def _identity(series_uid, sop_uid="", study_description="Pelvis", modality="RTDOSE"):
    return DicomIdentity(
        patient_name="Doe^Jane",
        patient_id="P1",
        study_instance_uid="1.2.3",
        study_id="42",
        study_description=study_description,
        study_date="20240101",
        series_instance_uid=series_uid,
        series_modality=modality,
        series_number="3",
        sop_instance_uid=sop_uid,
    )


def test_insert_creates_patient_study_series():
    sh = SubjectHierarchy()
    series = insert_series_in_hierarchy(sh, _identity("1.2.3.1", "1.2.3.1.1"))

    study = sh.parent(series)
    patient = sh.parent(study)
    assert sh.item(series).level == Level.SERIES
    assert sh.item(study).level == Level.STUDY
    assert sh.item(patient).level == Level.PATIENT
    assert sh.parent(patient) == sh.scene_item_id
    assert sh.name(patient) == "Doe^Jane"
    assert sh.name(study) == "Pelvis"
    assert sh.attribute(series, SERIES_MODALITY_ATTRIBUTE) == "RTDOSE"
    assert sh.find_by_uid(DICOM_INSTANCE_UID_NAME, "1.2.3.1.1") == series
    logger.info("✓ Patient/study/series created")


def test_study_attributes_are_filled_once():
    """A second series of the same study never overwrites what the first one recorded."""
    sh = SubjectHierarchy()
    first = insert_series_in_hierarchy(sh, _identity("1.2.3.1"))
    second = insert_series_in_hierarchy(sh, _identity("1.2.3.2", study_description="Other"))
    study = sh.ancestor_at_level(first, Level.STUDY)
    assert sh.ancestor_at_level(second, Level.STUDY) == study
    assert sh.attribute(study, STUDY_DESCRIPTION_ATTRIBUTE) == "Pelvis"
    assert sh.name(study) == "Pelvis"


def test_item_names_follow_config_flags():
    sh = SubjectHierarchy()
    cfg = ImportExportConfig(display_patient_id_in_name=True, display_study_date_in_name=True)
    series = insert_series_in_hierarchy(sh, _identity("1.2.3.1"), cfg)
    study = sh.parent(series)
    assert sh.name(sh.parent(study)) == "Doe^Jane (P1)"
    assert sh.name(study) == "Pelvis (20240101)"


def test_existing_data_item_is_moved_under_study():
    sh = SubjectHierarchy()
    item = sh.create_item(sh.scene_item_id, "Dose")
    sh.set_uid(item, DICOM_UID_NAME, "1.2.3.9")
    series = insert_series_in_hierarchy(sh, _identity("1.2.3.9"))
    assert series == item
    assert sh.item(sh.parent(item)).level == Level.STUDY


def test_uid_clash_is_rejected():
    sh = SubjectHierarchy()
    a = sh.create_item(sh.scene_item_id, "a")
    b = sh.create_item(sh.scene_item_id, "b")
    sh.set_uid(a, DICOM_UID_NAME, "1.1")
    with pytest.raises(ValueError):
        sh.set_uid(b, DICOM_UID_NAME, "1.1")
    sh.set_uid(a, DICOM_UID_NAME, "1.2")
    assert sh.find_by_uid(DICOM_UID_NAME, "1.1") == INVALID_ITEM_ID
    sh.set_uid(b, DICOM_UID_NAME, "1.1")
    assert sh.find_by_uid(DICOM_UID_NAME, "1.1") == b


def test_reparenting_under_descendant_fails():
    sh = SubjectHierarchy()
    parent = sh.create_folder_item(sh.scene_item_id, "parent")
    child = sh.create_item(parent, "child")
    with pytest.raises(ValueError):
        sh.set_item_parent(parent, child)


def test_remove_item_drops_subtree_and_indices():
    sh = SubjectHierarchy()
    folder = sh.create_folder_item(sh.scene_item_id, "folder")
    child = sh.create_item(folder, "child", entity_id=17)
    sh.set_uid(child, DICOM_UID_NAME, "5.5")
    sh.remove_item(folder)
    assert not sh.has_item(child)
    assert sh.find_by_uid(DICOM_UID_NAME, "5.5") == INVALID_ITEM_ID
    assert sh.item_by_entity(17) == INVALID_ITEM_ID
    assert sh.children(sh.scene_item_id) == []


def test_referenced_items_match_instance_lists():
    """A slice UID inside a space separated instance list resolves to the image series."""
    sh = SubjectHierarchy()
    plan = sh.create_item(sh.scene_item_id, "plan")
    sh.set_uid(plan, DICOM_INSTANCE_UID_NAME, "7.1")
    ct = sh.create_item(sh.scene_item_id, "ct")
    sh.set_uid(ct, DICOM_INSTANCE_UID_NAME, "8.1 8.2 8.3")
    dose = sh.create_item(sh.scene_item_id, "dose")
    sh.set_attribute(dose, REFERENCED_INSTANCE_UIDS_ATTRIBUTE, "7.1 8.2 8.3 9.9")
    assert sh.referenced_items_by_dicom(dose) == [plan, ct]
    assert sh.attribute(plan, "missing") == ""
