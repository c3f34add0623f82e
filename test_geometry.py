#!/usr/bin/env python3
"""
Tests for placing RT images by their treatment beam.

Usage:
    pytest test_geometry.py
"""

import logging

import numpy as np

import rt_fixtures as fx
from rtimportexport.constants import DICOM_INSTANCE_UID_NAME, DICOM_UID_NAME, PLANAR_IMAGE_DISPLAYED_MODEL_ROLE
from rtimportexport.entities import EntityKind
from rtimportexport.geometry import rt_image_placement
from rtimportexport.loaders import LoadSession, load_rt_image, load_rt_plan
from rtimportexport.reader import read_rt_image, read_rt_plan
from rtimportexport.utils import LPS_TO_RAS

logger = logging.getLogger(__name__)

PLAN_UID = "1.2.826.0.1.3680043.8.498.100"


def _apply(m, ijk):
    return (np.asarray(m) @ np.r_[ijk, 1.0])[:3]


def test_placement_at_gantry_zero():
    """The image plane sits SID - SAD behind the isocenter, opposite the source."""
    m = rt_image_placement(LPS_TO_RAS.copy(), (0.0, 0.0, 0.0), 0.0, 0.0, 1000.0, 1500.0, (-200.0, -200.0))
    assert np.allclose(_apply(m, [0, 0, 0]), [200.0, -500.0, -200.0])
    assert np.allclose(_apply(m, [1, 0, 0]), [199.0, -500.0, -200.0])
    assert np.allclose(_apply(m, [0, 1, 0]), [200.0, -500.0, -201.0])


def test_placement_follows_gantry_and_isocenter():
    m = rt_image_placement(LPS_TO_RAS.copy(), (5.0, 6.0, 7.0), 90.0, 0.0, 1000.0, 1500.0, (-200.0, -200.0))
    assert np.allclose(_apply(m, [0, 0, 0]), [505.0, 206.0, -193.0])


def _session_with(order, beam_number=1, beams=None):
    session = LoadSession()
    plan_ds = fx.make_plan(beams or [{"number": 1, "gantry": 90.0}], sop_instance_uid=PLAN_UID)
    image_ds = fx.make_rt_image(PLAN_UID, beam_number)
    plan, image = read_rt_plan(plan_ds), read_rt_image(image_ds)
    for kind in order:
        if kind == "plan":
            load_rt_plan(plan, session.hierarchy, session.store, session.config, session.geometry)
        else:
            load_rt_image(image, session.hierarchy, session.store, session.config, session.geometry)
    [volume] = session.store.of_kind(EntityKind.RT_IMAGE)
    return session, volume


def test_order_independent_placement():
    """Image-then-plan and plan-then-image give bit-identical transforms."""
    _, image_first = _session_with(["image", "plan"])
    _, plan_first = _session_with(["plan", "image"])
    assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in image_first.node_references
    assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in plan_first.node_references
    assert np.array_equal(image_first.ijk_to_ras, plan_first.ijk_to_ras)
    assert np.allclose(_apply(plan_first.ijk_to_ras, [0, 0, 0]), [500.0, 200.0, -200.0])
    logger.info("✓ Placement matches in both load orders")


def test_single_beam_plan_accepts_any_beam_number():
    for order in (["image", "plan"], ["plan", "image"]):
        session, volume = _session_with(order, beam_number=7)
        assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in volume.node_references
        assert session.geometry.pending == {}


def test_multi_beam_plan_needs_matching_beam():
    beams = [{"number": 1, "gantry": 0.0}, {"number": 2, "gantry": 90.0}]
    session, volume = _session_with(["plan", "image"], beam_number=5, beams=beams)
    assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE not in volume.node_references
    assert (PLAN_UID, 5) in session.geometry.pending

    session, volume = _session_with(["image", "plan"], beam_number=2, beams=beams)
    assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in volume.node_references
    assert np.allclose(_apply(volume.ijk_to_ras, [0, 0, 0]), [500.0, 200.0, -200.0])


def test_setup_is_idempotent():
    session, volume = _session_with(["plan", "image"])
    matrix = volume.ijk_to_ras.copy()
    item = session.hierarchy.item_by_entity(volume.id)
    assert session.geometry.setup_from_image(item)
    [plan] = session.store.of_kind(EntityKind.PLAN)
    session.geometry.setup_from_beam(plan.beam_ids[0])
    assert np.array_equal(volume.ijk_to_ras, matrix)
    [model] = session.store.of_kind(EntityKind.MODEL)
    assert model.texture_volume_id == volume.id
    assert not model.visible
    assert volume.node_references[PLANAR_IMAGE_DISPLAYED_MODEL_ROLE] == model.id


def test_image_without_plan_stays_pending():
    session, volume = _session_with(["image"])
    assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE not in volume.node_references
    assert session.geometry.pending == {(PLAN_UID, 1): [session.hierarchy.item_by_entity(volume.id)]}
    assert np.array_equal(volume.ijk_to_ras, LPS_TO_RAS)


TWO_BEAMS = [{"number": 1, "gantry": 0.0}, {"number": 2, "gantry": 90.0}]


def _load_all(session, plan_ds, image_datasets, plan_last):
    plan = read_rt_plan(plan_ds)
    images = [read_rt_image(ds) for ds in image_datasets]
    results = []
    if not plan_last:
        results.append(load_rt_plan(plan, session.hierarchy, session.store, session.config, session.geometry).success)
    for image in images:
        results.append(load_rt_image(image, session.hierarchy, session.store, session.config, session.geometry).success)
    if plan_last:
        results.append(load_rt_plan(plan, session.hierarchy, session.store, session.config, session.geometry).success)
    return results


def test_images_sharing_a_series_are_all_loaded_and_placed():
    """Portal images of one RTIMAGE series each get their own item under the series."""
    plan_ds = fx.make_plan(TWO_BEAMS, sop_instance_uid=PLAN_UID)
    first, second = fx.make_rt_image(PLAN_UID, 1), fx.make_rt_image(PLAN_UID, 2)
    second.SeriesInstanceUID = first.SeriesInstanceUID

    for plan_last in (False, True):
        session = LoadSession()
        assert _load_all(session, plan_ds, [first, second], plan_last) == [True, True, True]
        volumes = sorted(session.store.of_kind(EntityKind.RT_IMAGE), key=lambda v: v.id)
        assert len(volumes) == 2
        assert all(PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in v.node_references for v in volumes)
        assert not np.array_equal(volumes[0].ijk_to_ras, volumes[1].ijk_to_ras)

        sh = session.hierarchy
        first_item, second_item = (sh.item_by_entity(v.id) for v in volumes)
        assert sh.find_by_uid(DICOM_UID_NAME, first.SeriesInstanceUID) == first_item
        assert sh.parent(second_item) == first_item
        assert sh.uid(second_item, DICOM_INSTANCE_UID_NAME) == second.SOPInstanceUID
        assert session.geometry.pending == {}
    logger.info("✓ Both images of the shared series placed")


def test_two_images_of_one_beam_are_placed_in_either_order():
    """A DRR and a portal image of the same beam are both placed, whenever the plan arrives."""
    plan_ds = fx.make_plan(TWO_BEAMS, sop_instance_uid=PLAN_UID)
    drr, portal = fx.make_rt_image(PLAN_UID, 1), fx.make_rt_image(PLAN_UID, 1)

    transforms = []
    for plan_last in (False, True):
        session = LoadSession()
        assert all(_load_all(session, plan_ds, [drr, portal], plan_last))
        volumes = sorted(session.store.of_kind(EntityKind.RT_IMAGE), key=lambda v: v.id)
        assert [PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in v.node_references for v in volumes] == [True, True]
        assert len(session.store.of_kind(EntityKind.MODEL)) == 2
        assert session.geometry.pending == {}
        transforms.append([v.ijk_to_ras for v in volumes])

    for plan_first, plan_last in zip(*transforms):
        assert np.array_equal(plan_first, plan_last)
