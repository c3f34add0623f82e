#!/usr/bin/env python3
"""
Tests for loading RT plans and their beams.

Usage:
    pytest test_plan_loader.py
"""

import logging

import numpy as np

import rt_fixtures as fx
from rtimportexport.constants import DICOM_INSTANCE_UID_NAME, REFERENCED_INSTANCE_UIDS_ATTRIBUTE
from rtimportexport.entities import BeamNode, EntityKind, EntityStore
from rtimportexport.hierarchy import Level, SubjectHierarchy
from rtimportexport.loaders import load_rt_plan
from rtimportexport.reader import read_rt_plan

logger = logging.getLogger(__name__)

ISO = (10.0, 20.0, 30.0)


def _beams(*isocenters):
    return [
        {"number": n, "gantry": 40.0 * n, "couch": 5.0, "collimator": 15.0, "isocenter": iso, "sad": 1000.0}
        for n, iso in enumerate(isocenters, start=1)
    ]


def _load(ds):
    sh, store = SubjectHierarchy(), EntityStore()
    result = load_rt_plan(read_rt_plan(ds), sh, store)
    return result, sh, store


def test_plan_with_shared_isocenter():
    ds = fx.make_plan(_beams(ISO, (10.0005, 20.0, 30.0), ISO))
    result, sh, store = _load(ds)
    assert result.success
    [plan] = store.of_kind(EntityKind.PLAN)
    # isocenter is converted from LPS to RAS
    assert plan.isocenter == (-10.0, -20.0, 30.0)
    assert len(plan.beam_ids) == 3

    beams = [store.get(b) for b in plan.beam_ids]
    assert [b.number for b in beams] == [1, 2, 3]
    assert [b.gantry_angle for b in beams] == [40.0, 80.0, 120.0]
    assert all(isinstance(b, BeamNode) and b.plan_id == plan.id for b in beams)
    assert beams[0].jaws == ((-50.0, 50.0), (-40.0, 40.0))
    logger.info("✓ Plan with %d beams", len(beams))


def test_isocenter_mismatch_warns_and_keeps_first(caplog):
    ds = fx.make_plan(_beams(ISO, (15.0, 20.0, 30.0)))
    with caplog.at_level(logging.WARNING):
        result, _, store = _load(ds)
    assert result.success
    [plan] = store.of_kind(EntityKind.PLAN)
    assert plan.isocenter == (-10.0, -20.0, 30.0)
    assert "Different isocenters" in caplog.text


def test_no_warning_within_tolerance(caplog):
    ds = fx.make_plan(_beams(ISO, (10.0005, 20.0, 30.0)))
    with caplog.at_level(logging.WARNING):
        _load(ds)
    assert "Different isocenters" not in caplog.text


def test_plan_items_and_references():
    ds = fx.make_plan(_beams(ISO, ISO), structure_set_uid="5.5", dose_uids=["6.1", "6.2"])
    _, sh, store = _load(ds)
    [plan] = store.of_kind(EntityKind.PLAN)
    item = sh.item_by_entity(plan.id)
    assert sh.item(sh.parent(item)).level == Level.STUDY
    assert sh.uid(item, DICOM_INSTANCE_UID_NAME) == ds.SOPInstanceUID
    assert sh.attribute(item, REFERENCED_INSTANCE_UIDS_ATTRIBUTE) == "5.5 6.1 6.2"
    assert [sh.name(c) for c in sh.children(item)] == ["B1", "B2"]
    assert [sh.item(c).entity_id for c in sh.children(item)] == plan.beam_ids


def test_change_events_are_held_until_plan_is_complete():
    """Observers never see the store while the plan is half built."""
    sh, store = SubjectHierarchy(), EntityStore()
    seen = []

    def observer(event, entity_id):
        seen.append((event, entity_id, store.in_batch, len(store)))

    store.observers.append(observer)
    load_rt_plan(read_rt_plan(fx.make_plan(_beams(ISO, ISO, ISO))), sh, store)
    assert len(seen) == 4
    assert all(not in_batch for _, _, in_batch, _ in seen)
    assert all(size == 4 for _, _, _, size in seen)
    assert np.all([event == "added" for event, _, _, _ in seen])
