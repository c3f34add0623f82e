from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import numpy as np

from .segmentation import Segmentation

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    VOLUME = "volume"
    DOSE_VOLUME = "dose_volume"
    RT_IMAGE = "rt_image"
    PLAN = "plan"
    BEAM = "beam"
    SEGMENTATION = "segmentation"
    MARKUPS = "markups"
    MODEL = "model"


@dataclass
class VolumeDisplay:
    window: float = 0.0
    level: float = 0.0
    window_min: Optional[float] = None
    window_max: Optional[float] = None
    auto_window_level: bool = True
    lower_threshold: Optional[float] = None
    apply_threshold: bool = False
    color_table: str = "Grey"


@dataclass
class Entity:
    name: str
    id: int = 0

    kind = EntityKind.VOLUME


@dataclass
class VolumeNode(Entity):
    # Voxels in [k, j, i] order
    array: np.ndarray = field(default_factory=lambda: np.zeros((1, 1, 1), dtype=np.float32))
    ijk_to_ras: np.ndarray = field(default_factory=lambda: np.eye(4))
    kind: EntityKind = EntityKind.VOLUME
    display: VolumeDisplay = field(default_factory=VolumeDisplay)
    # role -> entity id
    node_references: Dict[str, int] = field(default_factory=dict)
    # World-space 4x4 applied on top of ijk_to_ras
    parent_transform: Optional[np.ndarray] = None


@dataclass
class BeamNode(Entity):
    number: int = 0
    jaws: Tuple[Tuple[float, float], Tuple[float, float]] = ((0.0, 0.0), (0.0, 0.0))
    gantry_angle: float = 0.0
    collimator_angle: float = 0.0
    couch_angle: float = 0.0
    source_axis_distance: float = 1000.0
    plan_id: Optional[int] = None

    kind = EntityKind.BEAM


@dataclass
class PlanNode(Entity):
    beam_ids: List[int] = field(default_factory=list)
    isocenter: Optional[Tuple[float, float, float]] = None

    kind = EntityKind.PLAN

    def set_isocenter(self, position) -> None:
        self.isocenter = tuple(float(v) for v in position)


@dataclass
class MarkupsNode(Entity):
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    color: Tuple[float, float, float] = (1.0, 0.0, 0.0)
    locked: bool = True
    visible: bool = False

    kind = EntityKind.MARKUPS


@dataclass
class ModelNode(Entity):
    vertices: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    faces: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.int64))
    visible: bool = False
    texture_volume_id: Optional[int] = None

    kind = EntityKind.MODEL


@dataclass
class SegmentationNode(Entity):
    segmentation: Segmentation = field(default_factory=Segmentation)
    display_representation_3d: str = ""
    display_representation_2d: str = ""
    parent_transform: Optional[np.ndarray] = None

    kind = EntityKind.SEGMENTATION


class EntityStore:
    """Owns every created entity and hands out stable integer ids."""

    def __init__(self) -> None:
        self._entities: Dict[int, Entity] = {}
        self._next_id = 1
        self._batch_depth = 0
        self._pending_events: List[Tuple[str, int]] = []
        self.observers: List[Callable[[str, int], None]] = []

    def add(self, entity: Entity) -> int:
        entity.id = self._next_id
        self._next_id += 1
        self._entities[entity.id] = entity
        self._notify("added", entity.id)
        return entity.id

    def get(self, entity_id: Optional[int]) -> Optional[Entity]:
        if entity_id is None:
            return None
        return self._entities.get(entity_id)

    def remove(self, entity_id: int) -> None:
        if self._entities.pop(entity_id, None) is not None:
            self._notify("removed", entity_id)

    def modified(self, entity_id: int) -> None:
        self._notify("modified", entity_id)

    def of_kind(self, kind: EntityKind) -> List[Entity]:
        return [e for e in self._entities.values() if e.kind == kind]

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: int) -> bool:
        return entity_id in self._entities

    @property
    def in_batch(self) -> bool:
        return self._batch_depth > 0

    @contextmanager
    def batch(self) -> Iterator["EntityStore"]:
        """Hold back change notifications until the outermost batch ends."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                events, self._pending_events = self._pending_events, []
                for event, entity_id in events:
                    self._dispatch(event, entity_id)

    def _notify(self, event: str, entity_id: int) -> None:
        if self._batch_depth > 0:
            self._pending_events.append((event, entity_id))
        else:
            self._dispatch(event, entity_id)

    def _dispatch(self, event: str, entity_id: int) -> None:
        for observer in self.observers:
            observer(event, entity_id)
