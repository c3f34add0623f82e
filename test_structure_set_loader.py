#!/usr/bin/env python3
"""
Tests for loading RT structure sets into fiducials and segmentations.

Usage:
    pytest test_structure_set_loader.py
"""

import logging

import numpy as np

import rt_fixtures as fx
from rtimportexport.config import ImportExportConfig
from rtimportexport.constants import (
    DICOM_UID_NAME,
    FIDUCIALS_FOLDER_POSTFIX,
    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
    ROI_REFERENCED_SERIES_UID_ATTRIBUTE,
)
from rtimportexport.entities import EntityKind, EntityStore
from rtimportexport.hierarchy import Level, SubjectHierarchy
from rtimportexport.loaders import LoadSession, load_rt_structure_set, referenced_volume_for_segmentation
from rtimportexport.reader import read_rt_structure_set
from rtimportexport.segmentation import CLOSED_SURFACE, PLANAR_CONTOUR

logger = logging.getLogger(__name__)

SERIES_UID = "1.2.826.0.1.3680043.8.498.77"


def _rois():
    return [
        ("Marker", (0, 255, 0), [np.array([[10.0, 20.0, 4.0]])]),
        ("Box", (255, 0, 0), fx.box_contours_lps(1.0, 3.0, 1.0, 4.0, [0.0, 2.0, 4.0])),
        ("Empty", (0, 0, 255), []),
    ]


def test_rois_classified_by_point_count(caplog):
    """One point becomes a fiducial, more points a segment, none is skipped."""
    sh, store = SubjectHierarchy(), EntityStore()
    ds = fx.make_structure_set(_rois(), SERIES_UID, image_uids=["4.1", "4.2"])
    with caplog.at_level(logging.WARNING):
        result = load_rt_structure_set(read_rt_structure_set(ds), sh, store)
    assert result.success
    assert "does not contain any points for ROI named 'Empty'" in caplog.text

    [markups] = store.of_kind(EntityKind.MARKUPS)
    assert markups.name == "Marker"
    assert np.allclose(markups.points, [[-10.0, -20.0, 4.0]])
    assert markups.locked and not markups.visible
    assert markups.color == (0.0, 1.0, 0.0)

    [seg_node] = store.of_kind(EntityKind.SEGMENTATION)
    seg = seg_node.segmentation
    assert seg.master_representation == PLANAR_CONTOUR
    assert seg.segment_ids() == ["Box"]
    assert len(seg.segments["Box"].representations[PLANAR_CONTOUR]) == 3
    assert seg_node.display_representation_3d == CLOSED_SURFACE
    logger.info("✓ Fiducial, segment and skipped ROI")


def test_hierarchy_placement():
    sh, store = SubjectHierarchy(), EntityStore()
    ds = fx.make_structure_set(_rois(), SERIES_UID, image_uids=["4.1", "4.2"])
    load_rt_structure_set(read_rt_structure_set(ds), sh, store)

    [seg_node] = store.of_kind(EntityKind.SEGMENTATION)
    seg_item = sh.item_by_entity(seg_node.id)
    assert sh.find_by_uid(DICOM_UID_NAME, ds.SeriesInstanceUID) == seg_item
    assert sh.attribute(seg_item, ROI_REFERENCED_SERIES_UID_ATTRIBUTE) == SERIES_UID
    assert sh.attribute(seg_item, REFERENCED_INSTANCE_UIDS_ATTRIBUTE) == "4.1 4.2"

    study = sh.parent(seg_item)
    assert sh.item(study).level == Level.STUDY
    [markups] = store.of_kind(EntityKind.MARKUPS)
    marker_item = sh.item_by_entity(markups.id)
    folder = sh.parent(marker_item)
    assert sh.name(folder) == "RTSTRUCT: Structures" + FIDUCIALS_FOLDER_POSTFIX
    assert sh.parent(folder) == study
    assert sh.attribute(marker_item, ROI_REFERENCED_SERIES_UID_ATTRIBUTE) == SERIES_UID


def test_fiducials_only_structure_set_is_the_series_item():
    sh, store = SubjectHierarchy(), EntityStore()
    ds = fx.make_structure_set([_rois()[0]], SERIES_UID)
    load_rt_structure_set(read_rt_structure_set(ds), sh, store)
    folder = sh.find_by_uid(DICOM_UID_NAME, ds.SeriesInstanceUID)
    assert sh.item(folder).level == Level.FOLDER
    assert sh.item(sh.parent(folder)).level == Level.STUDY
    assert store.of_kind(EntityKind.SEGMENTATION) == []


def test_large_structure_set_keeps_planar_contours(caplog):
    sh, store = SubjectHierarchy(), EntityStore()
    config = ImportExportConfig(max_points_per_segment=4)
    ds = fx.make_structure_set(_rois(), SERIES_UID)
    with caplog.at_level(logging.WARNING):
        load_rt_structure_set(read_rt_structure_set(ds), sh, store, config)
    [seg_node] = store.of_kind(EntityKind.SEGMENTATION)
    assert seg_node.display_representation_3d == PLANAR_CONTOUR
    assert CLOSED_SURFACE not in seg_node.segmentation.segments["Box"].representations
    assert "extremely large contours" in caplog.text


def test_reference_geometry_from_loaded_image_series(tmp_path):
    """Contours are rasterized on the grid of the referenced CT when it is loaded."""
    session = LoadSession()
    paths, series_uid, slice_uids = fx.make_ct_series(tmp_path, shape=(4, 6, 5), spacing=(1.0, 1.0, 2.0))
    assert session.load_image_series(paths).success

    [ct] = session.store.of_kind(EntityKind.VOLUME)
    assert ct.array.shape == (4, 6, 5)
    # slices come back sorted by position whatever the file order
    assert [int(ct.array[k, 0, 0]) for k in range(4)] == [100, 101, 102, 103]
    ct_item = session.hierarchy.item_by_entity(ct.id)
    assert session.hierarchy.uid(ct_item, "DICOMInstanceUID").split() == slice_uids

    ds = fx.make_structure_set(_rois(), series_uid)
    result = load_rt_structure_set(read_rt_structure_set(ds), session.hierarchy, session.store, session.config)
    assert result.success
    [seg_node] = session.store.of_kind(EntityKind.SEGMENTATION)
    geometry = seg_node.segmentation.reference_geometry
    assert geometry is not None
    assert geometry.shape == (4, 6, 5)
    assert np.allclose(geometry.ijk_to_ras, ct.ijk_to_ras)

    seg_item = session.hierarchy.item_by_entity(seg_node.id)
    assert referenced_volume_for_segmentation(session.hierarchy, session.store, seg_item) is ct


def test_image_series_loaded_after_structure_set_sets_reference(tmp_path):
    session = LoadSession()
    paths, series_uid, _ = fx.make_ct_series(tmp_path, shape=(4, 6, 5), spacing=(1.0, 1.0, 2.0))
    ds = fx.make_structure_set(_rois(), series_uid)
    load_rt_structure_set(read_rt_structure_set(ds), session.hierarchy, session.store, session.config)
    [seg_node] = session.store.of_kind(EntityKind.SEGMENTATION)
    assert seg_node.segmentation.reference_geometry is None

    session.load_image_series(paths)
    assert seg_node.segmentation.reference_geometry is not None
    assert seg_node.segmentation.reference_geometry.shape == (4, 6, 5)
