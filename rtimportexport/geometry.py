"""Placement of RT images (portal images, DRRs) in the patient frame.

An RT image can only be positioned once both the image and the beam it was
acquired with are loaded.  Whichever arrives first registers itself; the
second one completes the link:

* an image registers in a pending table keyed by (plan SOP instance UID,
  referenced beam number), which can hold several images (a DRR and a portal
  image of one beam), and is placed right away if the plan is present;
* a beam places every image pending under its own (plan UID, beam number)
  key, or, for a single-beam plan, every image referencing the plan, since
  the beam number recorded in such images is often unreliable.

Placement is idempotent: an image that already has its planar display model
is left untouched.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .constants import (
    BEAM_NUMBER_ATTRIBUTE,
    DICOM_INSTANCE_UID_NAME,
    PLANAR_IMAGE_DISPLAYED_MODEL_ROLE,
    PLANAR_IMAGE_MODEL_NAME_PREFIX,
    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
    RTIMAGE_IDENTIFIER_ATTRIBUTE,
    RTIMAGE_POSITION_ATTRIBUTE,
    RTIMAGE_SID_ATTRIBUTE,
)
from .entities import BeamNode, EntityStore, ModelNode, PlanNode, VolumeNode
from .hierarchy import INVALID_ITEM_ID, SubjectHierarchy
from .utils import parse_numbers, rotation, translation

logger = logging.getLogger(__name__)


def rt_image_placement(
    image_ijk_to_ras: np.ndarray,
    isocenter,
    gantry_angle: float,
    couch_angle: float,
    source_axis_distance: float,
    sid: float,
    image_position: Tuple[float, float],
) -> np.ndarray:
    """IJK to RAS of an RT image placed by its beam.

    Each factor maps into the frame of the one to its left, so the rightmost
    (the image's own pixel grid) is applied first to a point.
    """
    fixed_to_isocenter = translation(*isocenter)
    couch_to_fixed = rotation(-couch_angle, (0.0, 1.0, 0.0))
    gantry_to_couch = rotation(gantry_angle, (0.0, 0.0, 1.0))
    source_to_gantry = translation(0.0, source_axis_distance, 0.0)
    image_to_source = translation(0.0, -sid, 0.0)
    center_to_corner = translation(-image_position[0], 0.0, image_position[1])
    # IEC patient frame to DICOM patient frame; the pixel grid already holds LPS to RAS
    iec_to_lps = rotation(90.0, (1.0, 0.0, 0.0))
    return (
        fixed_to_isocenter
        @ couch_to_fixed
        @ gantry_to_couch
        @ source_to_gantry
        @ image_to_source
        @ center_to_corner
        @ iec_to_lps
        @ np.asarray(image_ijk_to_ras, dtype=float)
    )


class RtImageGeometry:
    def __init__(self, hierarchy: SubjectHierarchy, store: EntityStore):
        self.hierarchy = hierarchy
        self.store = store
        # (plan SOP instance UID, referenced beam number) -> RT image item ids
        self.pending: Dict[Tuple[str, int], List[int]] = {}

    # --- entry points ---------------------------------------------------------

    def setup_from_image(self, image_item_id: int) -> bool:
        """Place an RT image if its beam is loaded, otherwise leave it pending."""
        sh = self.hierarchy
        volume = self._volume(image_item_id)
        if volume is None:
            logger.error("Failed to retrieve RT image volume for item %d", image_item_id)
            return False
        if PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in volume.node_references:
            logger.debug("RT image '%s' has been set up already", volume.name)
            return True

        plan_uid = sh.attribute(image_item_id, REFERENCED_INSTANCE_UIDS_ATTRIBUTE).strip()
        if not plan_uid:
            logger.error("Unable to find referenced plan SOP instance UID for RT image '%s'", volume.name)
            return False
        beam_number_str = sh.attribute(image_item_id, BEAM_NUMBER_ATTRIBUTE)
        if not beam_number_str:
            logger.error("No referenced beam number specified in RT image '%s'", volume.name)
            return False
        beam_number = int(float(beam_number_str))
        waiting = self.pending.setdefault((plan_uid, beam_number), [])
        if image_item_id not in waiting:
            waiting.append(image_item_id)

        plan_item = sh.find_by_uid(DICOM_INSTANCE_UID_NAME, plan_uid)
        if plan_item == INVALID_ITEM_ID:
            logger.debug(
                "Cannot set up geometry of RT image '%s' without the referenced RT plan; "
                "will be set up upon loading the plan",
                volume.name,
            )
            return False
        plan = self.store.get(sh.item(plan_item).entity_id)
        if not isinstance(plan, PlanNode):
            logger.error("Referenced plan item '%s' holds no plan", sh.name(plan_item))
            return False

        beam = self._beam_by_number(plan, beam_number)
        if beam is None and len(plan.beam_ids) == 1:
            beam = self.store.get(plan.beam_ids[0])
        if beam is None:
            logger.error(
                "Failed to retrieve beam %d for RT image '%s' in RT plan '%s'",
                beam_number, volume.name, sh.name(plan_item),
            )
            return False
        return self._place(image_item_id, volume, beam, plan, (plan_uid, beam_number))

    def setup_from_beam(self, beam_id: int) -> bool:
        """Place the RT images acquired with this beam that are already loaded."""
        sh = self.hierarchy
        beam = self.store.get(beam_id)
        if not isinstance(beam, BeamNode):
            logger.error("Entity %s is not a beam", beam_id)
            return False
        plan = self.store.get(beam.plan_id)
        if not isinstance(plan, PlanNode):
            logger.error("Failed to retrieve valid plan for beam '%s'", beam.name)
            return False
        plan_item = sh.item_by_entity(plan.id)
        if plan_item == INVALID_ITEM_ID:
            logger.error("Failed to retrieve plan hierarchy item for beam '%s'", beam.name)
            return False
        plan_uid = sh.uid(plan_item, DICOM_INSTANCE_UID_NAME)
        if not plan_uid:
            logger.error("Failed to get RT plan DICOM UID for beam '%s'", beam.name)
            return False

        if len(plan.beam_ids) == 1:
            keys = [key for key in self.pending if key[0] == plan_uid]
        else:
            keys = [(plan_uid, beam.number)] if (plan_uid, beam.number) in self.pending else []
        waiting = [(key, item_id) for key in keys for item_id in list(self.pending[key])]
        if not waiting:
            logger.debug(
                "RT image for beam '%s' is not loaded yet; will be set up upon loading the image", beam.name
            )
            return False

        placed = True
        for key, image_item in waiting:
            volume = self._volume(image_item)
            if volume is None:
                self._forget(key, image_item)
                placed = False
                continue
            placed = self._place(image_item, volume, beam, plan, key) and placed
        return placed

    # --- internals ------------------------------------------------------------

    def _volume(self, item_id: int) -> Optional[VolumeNode]:
        if not self.hierarchy.has_item(item_id):
            return None
        if not self.hierarchy.attribute(item_id, RTIMAGE_IDENTIFIER_ATTRIBUTE):
            return None
        entity = self.store.get(self.hierarchy.item(item_id).entity_id)
        return entity if isinstance(entity, VolumeNode) else None

    def _beam_by_number(self, plan: PlanNode, number: int) -> Optional[BeamNode]:
        for beam_id in plan.beam_ids:
            beam = self.store.get(beam_id)
            if isinstance(beam, BeamNode) and beam.number == number:
                return beam
        return None

    def _forget(self, key: Tuple[str, int], image_item: int) -> None:
        waiting = self.pending.get(key, [])
        if image_item in waiting:
            waiting.remove(image_item)
        if not waiting:
            self.pending.pop(key, None)

    def _place(self, image_item: int, volume: VolumeNode, beam: BeamNode, plan: PlanNode, key) -> bool:
        if PLANAR_IMAGE_DISPLAYED_MODEL_ROLE in volume.node_references:
            self._forget(key, image_item)
            return True
        if plan.isocenter is None:
            logger.error("Failed to get plan isocenter position for plan '%s'", plan.name)
            return False

        sh = self.hierarchy
        sid_values = parse_numbers(sh.attribute(image_item, RTIMAGE_SID_ATTRIBUTE))
        sid = sid_values[0] if sid_values else 0.0
        position = parse_numbers(sh.attribute(image_item, RTIMAGE_POSITION_ATTRIBUTE))
        if len(position) < 2:
            position = [0.0, 0.0]

        volume.ijk_to_ras = rt_image_placement(
            volume.ijk_to_ras,
            plan.isocenter,
            beam.gantry_angle,
            beam.couch_angle,
            beam.source_axis_distance,
            sid,
            (position[0], position[1]),
        )
        model_id = self.store.add(self._planar_model(volume))
        volume.node_references[PLANAR_IMAGE_DISPLAYED_MODEL_ROLE] = model_id
        self.store.modified(volume.id)
        self._forget(key, image_item)
        logger.info("Set up geometry of RT image '%s' from beam '%s'", volume.name, beam.name)
        return True

    @staticmethod
    def _planar_model(volume: VolumeNode) -> ModelNode:
        """Hidden quad spanning the image, textured by it."""
        nj, ni = volume.array.shape[-2], volume.array.shape[-1]
        corners = np.array(
            [[0, 0, 0, 1], [ni - 1, 0, 0, 1], [ni - 1, nj - 1, 0, 1], [0, nj - 1, 0, 1]], dtype=float
        )
        vertices = (corners @ volume.ijk_to_ras.T)[:, :3]
        return ModelNode(
            name=PLANAR_IMAGE_MODEL_NAME_PREFIX + volume.name,
            vertices=vertices,
            faces=np.array([[0, 1, 2], [0, 2, 3]], dtype=np.int64),
            visible=False,
            texture_volume_id=volume.id,
        )
