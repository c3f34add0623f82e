#!/usr/bin/env python3
"""
Tests for loading RT dose volumes.

Usage:
    pytest test_dose_loader.py
"""

import logging

import numpy as np

import rt_fixtures as fx
from rtimportexport.config import ImportExportConfig, IsodoseColorTable
from rtimportexport.constants import (
    DICOM_INSTANCE_UID_NAME,
    DICOM_UID_NAME,
    DOSE_UNIT_NAME_ATTRIBUTE,
    DOSE_UNIT_VALUE_ATTRIBUTE,
    DOSE_VOLUME_IDENTIFIER_ATTRIBUTE,
    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
    SERIES_MODALITY_ATTRIBUTE,
)
from rtimportexport.entities import EntityKind, EntityStore
from rtimportexport.hierarchy import Level, SubjectHierarchy
from rtimportexport.loaders import load_rt_dose
from rtimportexport.reader import read_rt_dose

logger = logging.getLogger(__name__)

RAW = np.arange(2 * 3 * 4, dtype=np.uint32).reshape(2, 3, 4) * 37


def _load(ds, sh=None, store=None, config=None):
    sh = sh if sh is not None else SubjectHierarchy()
    store = store if store is not None else EntityStore()
    result = load_rt_dose(read_rt_dose(ds), sh, store, config)
    return result, sh, store


def test_dose_values_are_scaled_exactly():
    """Every voxel equals grid scaling times the stored value."""
    result, sh, store = _load(fx.make_dose(RAW, scaling=0.01, plan_uid="1.9"))
    assert result.success
    [volume] = store.of_kind(EntityKind.DOSE_VOLUME)
    assert volume.array.dtype == np.float32
    expected = (RAW.astype(np.float64) * 0.01).astype(np.float32)
    assert np.array_equal(volume.array, expected)
    logger.info("✓ Dose max %.3f", float(volume.array.max()))


def test_dose_item_attributes_and_geometry():
    ds = fx.make_dose(RAW, scaling=0.01, plan_uid="1.9", origin=(10.0, 20.0, 30.0), spacing=(2.0, 3.0, 4.0))
    result, sh, store = _load(ds)
    [volume] = store.of_kind(EntityKind.DOSE_VOLUME)
    item = sh.item_by_entity(volume.id)
    assert sh.attribute(item, DOSE_VOLUME_IDENTIFIER_ATTRIBUTE) == "1"
    assert sh.attribute(item, REFERENCED_INSTANCE_UIDS_ATTRIBUTE) == "1.9"
    assert sh.uid(item, DICOM_UID_NAME) == ds.SeriesInstanceUID
    # LPS origin (10, 20, 30) is RAS (-10, -20, 30); columns run along -R, rows along -A
    assert np.allclose(volume.ijk_to_ras[:3, 3], [-10.0, -20.0, 30.0])
    assert np.allclose(np.diag(volume.ijk_to_ras)[:3], [-2.0, -3.0, 4.0])


def test_dose_display_from_isodose_table():
    config = ImportExportConfig(
        isodose_color_table=IsodoseColorTable(levels=[("10", (0.0, 1.0, 0.0)), ("60", (1.0, 0.0, 0.0))])
    )
    _, _, store = _load(fx.make_dose(RAW, scaling=0.02), config=config)
    [volume] = store.of_kind(EntityKind.DOSE_VOLUME)
    assert volume.display.window_min == 10.0
    assert volume.display.window_max == 60.0
    assert volume.display.lower_threshold == 0.5 * 0.02
    assert volume.display.apply_threshold
    assert not volume.display.auto_window_level


def test_dose_unit_first_wins(caplog):
    """The first dose of a study sets the unit; a differing one only warns."""
    sh, store = SubjectHierarchy(), EntityStore()
    _load(fx.make_dose(RAW, scaling=0.01, units="GY"), sh, store)
    with caplog.at_level(logging.WARNING):
        _load(fx.make_dose(RAW, scaling=0.02, units="CGY"), sh, store)

    study = sh.find_by_uid(DICOM_UID_NAME, fx.STUDY_UID)
    assert sh.item(study).level == Level.STUDY
    assert sh.attribute(study, DOSE_UNIT_NAME_ATTRIBUTE) == "GY"
    assert sh.attribute(study, DOSE_UNIT_VALUE_ATTRIBUTE) == "0.01"
    assert "Dose unit name already exists" in caplog.text
    assert "Dose unit value already exists" in caplog.text
    assert len(store.of_kind(EntityKind.DOSE_VOLUME)) == 2


def test_missing_grid_scaling_keeps_stored_values(caplog):
    ds = fx.make_dose(RAW)
    del ds.DoseGridScaling
    with caplog.at_level(logging.WARNING):
        result, _, store = _load(ds)
    assert result.success
    [volume] = store.of_kind(EntityKind.DOSE_VOLUME)
    assert np.array_equal(volume.array, RAW.astype(np.float32))
    assert "Empty dose grid scaling" in caplog.text


def test_failed_load_leaves_nothing_behind():
    """Loading the same instance twice aborts and removes the half-built entity."""
    sh, store = SubjectHierarchy(), EntityStore()
    ds = fx.make_dose(RAW)
    assert _load(ds, sh, store)[0].success
    items_before = len(sh)
    result, _, _ = _load(ds, sh, store)
    assert not result.success
    assert result.entity_ids == []
    assert len(store.of_kind(EntityKind.DOSE_VOLUME)) == 1
    assert len(sh) == items_before


def test_doses_sharing_a_series_both_load():
    """Per-beam dose files of one series hang under a single series item."""
    sh, store = SubjectHierarchy(), EntityStore()
    first = fx.make_dose(RAW, scaling=0.01, plan_uid="1.9")
    second = fx.make_dose(RAW, scaling=0.01, plan_uid="1.9")
    second.SeriesInstanceUID = first.SeriesInstanceUID
    assert _load(first, sh, store)[0].success
    assert _load(second, sh, store)[0].success

    doses = sorted(store.of_kind(EntityKind.DOSE_VOLUME), key=lambda d: d.id)
    assert len(doses) == 2
    series_item = sh.find_by_uid(DICOM_UID_NAME, first.SeriesInstanceUID)
    first_item, second_item = (sh.item_by_entity(d.id) for d in doses)
    assert series_item == first_item
    assert sh.parent(second_item) == series_item
    assert sh.uid(second_item, DICOM_UID_NAME) == ""
    assert sh.find_by_uid(DICOM_INSTANCE_UID_NAME, first.SOPInstanceUID) == first_item
    assert sh.find_by_uid(DICOM_INSTANCE_UID_NAME, second.SOPInstanceUID) == second_item
    assert sh.attribute(second_item, SERIES_MODALITY_ATTRIBUTE) == "RTDOSE"
    assert sh.attribute(second_item, DOSE_VOLUME_IDENTIFIER_ATTRIBUTE) == "1"
    assert sh.item(sh.parent(series_item)).level == Level.STUDY
    logger.info("✓ Two doses under series item %d", series_item)
