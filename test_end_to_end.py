#!/usr/bin/env python3
"""
End-to-end loading of a small RT study from files, in different orders.

Usage:
    pytest test_end_to_end.py
"""

import logging

import numpy as np

import rt_fixtures as fx
from rtimportexport.constants import (
    DICOM_UID_NAME,
    DOSE_UNIT_NAME_ATTRIBUTE,
    DOSE_UNIT_VALUE_ATTRIBUTE,
    PLANAR_IMAGE_DISPLAYED_MODEL_ROLE,
    RT_DOSE_STORAGE,
    RT_IMAGE_STORAGE,
    RT_PLAN_STORAGE,
)
from rtimportexport.entities import EntityKind
from rtimportexport.examiner import examine_files
from rtimportexport.loaders import LoadSession

logger = logging.getLogger(__name__)

PLAN_UID = "1.2.826.0.1.3680043.8.498.300"
RAW = (np.arange(3 * 4 * 5, dtype=np.uint32).reshape(3, 4, 5) * 1000) % 7919


def _write_study(root):
    fx.write(fx.make_dose(RAW, scaling=0.01, plan_uid=PLAN_UID), root / "RD.1.dcm")
    fx.write(fx.make_dose(RAW, scaling=0.02, plan_uid=PLAN_UID, units="CGY"), root / "RD.2.dcm")
    fx.write(fx.make_plan([{"number": 1, "gantry": 90.0}], sop_instance_uid=PLAN_UID), root / "RP.dcm")
    fx.write(fx.make_rt_image(PLAN_UID, 1), root / "RI.dcm")
    # not an RT object; examine leaves it out
    fx.make_ct_series(root / "ct", shape=(2, 3, 3))
    files = sorted(root.rglob("*.dcm"))
    return {l.sop_class_uid + l.files[0].name: l for l in examine_files(files)}


class _CountingSetAttribute:
    """Wraps SubjectHierarchy.set_attribute to count writes per key."""

    def __init__(self, hierarchy):
        self.calls = {}
        self._set = hierarchy.set_attribute
        hierarchy.set_attribute = self

    def __call__(self, item_id, key, value):
        self.calls[key] = self.calls.get(key, 0) + 1
        return self._set(item_id, key, value)


def _load_in_order(loadables, order):
    session = LoadSession()
    counter = _CountingSetAttribute(session.hierarchy)
    keys = {
        "dose": [RT_DOSE_STORAGE + "RD.1.dcm", RT_DOSE_STORAGE + "RD.2.dcm"],
        "image": [RT_IMAGE_STORAGE + "RI.dcm"],
        "plan": [RT_PLAN_STORAGE + "RP.dcm"],
    }
    for kind in order:
        for key in keys[kind]:
            assert session.load(loadables[key]), key
    return session, counter


def test_examine_finds_rt_objects(tmp_path):
    loadables = _write_study(tmp_path)
    names = sorted(l.name for l in loadables.values())
    assert names == ["2: RTPLAN: Plan1", "3: RTDOSE: Dose", "3: RTDOSE: Dose", "4: RTIMAGE: Portal"]
    dose = loadables[RT_DOSE_STORAGE + "RD.1.dcm"]
    assert dose.referenced_instance_uids == [PLAN_UID]


def test_load_order_does_not_change_the_result(tmp_path):
    loadables = _write_study(tmp_path)
    forward, forward_counter = _load_in_order(loadables, ["dose", "image", "plan"])
    backward, backward_counter = _load_in_order(loadables, ["plan", "image", "dose"])

    transforms = []
    for session in (forward, backward):
        doses = session.store.of_kind(EntityKind.DOSE_VOLUME)
        assert len(doses) == 2
        first = min(doses, key=lambda d: d.id)
        assert np.array_equal(first.array, (RAW.astype(np.float64) * 0.01).astype(np.float32))

        [image] = session.store.of_kind(EntityKind.RT_IMAGE)
        assert PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in image.node_references
        assert len(session.store.of_kind(EntityKind.MODEL)) == 1
        transforms.append(image.ijk_to_ras)

        study = session.hierarchy.find_by_uid(DICOM_UID_NAME, fx.STUDY_UID)
        assert session.hierarchy.attribute(study, DOSE_UNIT_NAME_ATTRIBUTE) == "GY"
        assert session.hierarchy.attribute(study, DOSE_UNIT_VALUE_ATTRIBUTE) == "0.01"

    assert np.array_equal(transforms[0], transforms[1])
    # the second dose only warns about its differing unit
    for counter in (forward_counter, backward_counter):
        assert counter.calls[DOSE_UNIT_NAME_ATTRIBUTE] == 1
        assert counter.calls[DOSE_UNIT_VALUE_ATTRIBUTE] == 1
    logger.info("✓ Same scene for both load orders")


def test_load_directory_loads_series_before_rt_objects(tmp_path):
    paths, series_uid, _ = fx.make_ct_series(tmp_path / "ct")
    fx.write(
        fx.make_structure_set(
            [("Box", (255, 0, 0), fx.box_contours_lps(1.0, 3.0, 1.0, 4.0, [0.0, 2.0, 4.0]))], series_uid
        ),
        tmp_path / "RS.dcm",
    )
    fx.write(fx.make_dose(RAW, plan_uid=PLAN_UID), tmp_path / "RD.dcm")
    session = LoadSession()
    summary = session.load_directory(tmp_path)
    assert summary == {"image_series": 1, "rt_objects": 2, "failed": 0}

    [seg_node] = session.store.of_kind(EntityKind.SEGMENTATION)
    assert seg_node.segmentation.reference_geometry is not None
    assert seg_node.segmentation.reference_geometry.shape == (4, 6, 5)
