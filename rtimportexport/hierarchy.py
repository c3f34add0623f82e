from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import ImportExportConfig
from .constants import (
    DICOM_INSTANCE_UID_NAME,
    DICOM_UID_NAME,
    NO_PATIENT_NAME,
    NO_STUDY_DESCRIPTION,
    PATIENT_BIRTH_DATE_ATTRIBUTE,
    PATIENT_COMMENTS_ATTRIBUTE,
    PATIENT_ID_ATTRIBUTE,
    PATIENT_NAME_ATTRIBUTE,
    PATIENT_SEX_ATTRIBUTE,
    REFERENCED_INSTANCE_UIDS_ATTRIBUTE,
    SERIES_MODALITY_ATTRIBUTE,
    SERIES_NUMBER_ATTRIBUTE,
    STUDY_DATE_ATTRIBUTE,
    STUDY_DESCRIPTION_ATTRIBUTE,
    STUDY_ID_ATTRIBUTE,
    STUDY_INSTANCE_UID_ATTRIBUTE,
    STUDY_TIME_ATTRIBUTE,
)
from .objects import DicomIdentity

logger = logging.getLogger(__name__)

INVALID_ITEM_ID = 0


class Level(str, Enum):
    SCENE = "Scene"
    PATIENT = "Patient"
    STUDY = "Study"
    SERIES = "Series"
    FOLDER = "Folder"


@dataclass
class HierarchyItem:
    id: int
    name: str
    level: Level
    parent: int = INVALID_ITEM_ID
    children: List[int] = field(default_factory=list)
    attributes: Dict[str, str] = field(default_factory=dict)
    uids: Dict[str, str] = field(default_factory=dict)
    entity_id: Optional[int] = None


class SubjectHierarchy:
    """Patient / study / series tree stored as an arena of items addressed by integer ids.

    Parents are held as ids and children as ordered id lists, so items never
    point at each other directly.  Every UID is indexed per namespace so that
    lookups by UID are constant time.
    """

    def __init__(self) -> None:
        self._items: Dict[int, HierarchyItem] = {}
        self._uid_index: Dict[Tuple[str, str], int] = {}
        self._entity_index: Dict[int, int] = {}
        self._next_id = 1
        self.scene_item_id = self._new_item("Scene", Level.SCENE, INVALID_ITEM_ID)

    # --- construction ---------------------------------------------------------

    def _new_item(self, name: str, level: Level, parent: int) -> int:
        item_id = self._next_id
        self._next_id += 1
        self._items[item_id] = HierarchyItem(id=item_id, name=name, level=level, parent=parent)
        if parent != INVALID_ITEM_ID:
            self._items[parent].children.append(item_id)
        return item_id

    def create_item(
        self,
        parent_id: int,
        name: str,
        level: Level = Level.SERIES,
        entity_id: Optional[int] = None,
    ) -> int:
        if parent_id not in self._items:
            raise ValueError(f"Invalid parent item id {parent_id}")
        item_id = self._new_item(name, level, parent_id)
        if entity_id is not None:
            self._items[item_id].entity_id = entity_id
            self._entity_index[entity_id] = item_id
        return item_id

    def create_folder_item(self, parent_id: int, name: str) -> int:
        return self.create_item(parent_id, name, Level.FOLDER)

    def remove_item(self, item_id: int) -> None:
        """Remove an item together with its whole subtree."""
        item = self._items.get(item_id)
        if item is None or item_id == self.scene_item_id:
            return
        for child in list(item.children):
            self.remove_item(child)
        if item.parent in self._items:
            self._items[item.parent].children.remove(item_id)
        for key, value in item.uids.items():
            self._uid_index.pop((key, value), None)
        if item.entity_id is not None:
            self._entity_index.pop(item.entity_id, None)
        del self._items[item_id]

    # --- accessors ------------------------------------------------------------

    def item(self, item_id: int) -> HierarchyItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise ValueError(f"Invalid hierarchy item id {item_id}") from None

    def has_item(self, item_id: int) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def name(self, item_id: int) -> str:
        return self.item(item_id).name

    def set_name(self, item_id: int, name: str) -> None:
        self.item(item_id).name = name

    def parent(self, item_id: int) -> int:
        return self.item(item_id).parent

    def set_item_parent(self, item_id: int, parent_id: int) -> None:
        item = self.item(item_id)
        if parent_id not in self._items:
            raise ValueError(f"Invalid parent item id {parent_id}")
        if item.parent == parent_id:
            return
        ancestor = parent_id
        while ancestor != INVALID_ITEM_ID:
            if ancestor == item_id:
                raise ValueError("Cannot move an item under its own descendant")
            ancestor = self._items[ancestor].parent
        if item.parent in self._items:
            self._items[item.parent].children.remove(item_id)
        item.parent = parent_id
        self._items[parent_id].children.append(item_id)

    def children(self, item_id: int, recursive: bool = False) -> List[int]:
        direct = list(self.item(item_id).children)
        if not recursive:
            return direct
        out: List[int] = []
        for child in direct:
            out.append(child)
            out.extend(self.children(child, recursive=True))
        return out

    def ancestor_at_level(self, item_id: int, level: Level) -> int:
        current = self.item(item_id).parent
        while current != INVALID_ITEM_ID:
            if self._items[current].level == level:
                return current
            current = self._items[current].parent
        return INVALID_ITEM_ID

    def attribute(self, item_id: int, key: str) -> str:
        """Attribute value, empty string when unset."""
        return self.item(item_id).attributes.get(key, "")

    def set_attribute(self, item_id: int, key: str, value) -> None:
        self.item(item_id).attributes[key] = "" if value is None else str(value)

    def uid(self, item_id: int, namespace: str) -> str:
        return self.item(item_id).uids.get(namespace, "")

    def set_uid(self, item_id: int, namespace: str, uid: str) -> None:
        if not uid:
            return
        item = self.item(item_id)
        owner = self._uid_index.get((namespace, uid))
        if owner is not None and owner != item_id:
            raise ValueError(f"UID {uid} already used in namespace {namespace} by item {owner}")
        previous = item.uids.get(namespace)
        if previous is not None:
            self._uid_index.pop((namespace, previous), None)
        item.uids[namespace] = uid
        self._uid_index[(namespace, uid)] = item_id

    def find_by_uid(self, namespace: str, uid: Optional[str]) -> int:
        """Item carrying ``uid`` in ``namespace``; INVALID_ITEM_ID when none does yet."""
        if not uid:
            return INVALID_ITEM_ID
        return self._uid_index.get((namespace, uid), INVALID_ITEM_ID)

    def item_by_entity(self, entity_id: Optional[int]) -> int:
        if entity_id is None:
            return INVALID_ITEM_ID
        return self._entity_index.get(entity_id, INVALID_ITEM_ID)

    def referenced_items_by_dicom(self, item_id: int) -> List[int]:
        """Items whose instance UID appears in this item's referenced instance UID list.

        An instance UID attribute may hold several space separated UIDs (an
        image series stores one per slice); any of them matches.
        """
        out: List[int] = []
        for uid in self.attribute(item_id, REFERENCED_INSTANCE_UIDS_ATTRIBUTE).split():
            found = self.find_by_uid(DICOM_INSTANCE_UID_NAME, uid)
            if found == INVALID_ITEM_ID:
                found = self._find_in_instance_lists(uid)
            if found != INVALID_ITEM_ID and found not in out:
                out.append(found)
        return out

    def _find_in_instance_lists(self, uid: str) -> int:
        for (namespace, value), owner in self._uid_index.items():
            if namespace == DICOM_INSTANCE_UID_NAME and " " in value and uid in value.split():
                return owner
        return INVALID_ITEM_ID

    # --- DICOM insertion ------------------------------------------------------

    def insert_dicom_series(self, patient_id: str, study_uid: str, series_uid: str) -> int:
        """Create or reuse patient, study and series items, in that order.

        An existing series item, for example a data item that already carries the
        series UID, is moved under the study.
        """
        patient_item = self.find_by_uid(DICOM_UID_NAME, patient_id)
        if patient_item == INVALID_ITEM_ID:
            patient_item = self.create_item(self.scene_item_id, patient_id or "Unknown patient", Level.PATIENT)
            self.set_uid(patient_item, DICOM_UID_NAME, patient_id)
            logger.debug("Created patient item %d for patient %s", patient_item, patient_id)

        study_item = self.find_by_uid(DICOM_UID_NAME, study_uid)
        if study_item == INVALID_ITEM_ID:
            study_item = self.create_item(patient_item, study_uid or "Unknown study", Level.STUDY)
            self.set_uid(study_item, DICOM_UID_NAME, study_uid)
            logger.debug("Created study item %d for study %s", study_item, study_uid)
        elif self.parent(study_item) != patient_item:
            self.set_item_parent(study_item, patient_item)

        series_item = self.find_by_uid(DICOM_UID_NAME, series_uid)
        if series_item == INVALID_ITEM_ID:
            series_item = self.create_item(study_item, series_uid or "Unknown series", Level.SERIES)
            self.set_uid(series_item, DICOM_UID_NAME, series_uid)
        elif self.parent(series_item) != study_item:
            self.set_item_parent(series_item, study_item)
        return series_item


def patient_item_name(identity: DicomIdentity, config: ImportExportConfig) -> str:
    name = identity.patient_name or NO_PATIENT_NAME
    if config.display_patient_id_in_name and identity.patient_id:
        name += f" ({identity.patient_id})"
    if config.display_patient_birth_date_in_name and identity.patient_birth_date:
        name += f" ({identity.patient_birth_date})"
    return name


def study_item_name(identity: DicomIdentity, config: ImportExportConfig) -> str:
    name = identity.study_description or NO_STUDY_DESCRIPTION
    if config.display_study_id_in_name and identity.study_id:
        name += f" ({identity.study_id})"
    if config.display_study_date_in_name and identity.study_date:
        name += f" ({identity.study_date})"
    return name


def insert_series_in_hierarchy(
    hierarchy: SubjectHierarchy,
    identity: DicomIdentity,
    config: Optional[ImportExportConfig] = None,
) -> int:
    """Place a loaded series under its study and patient.

    Patient and study attributes are filled only when the respective item is
    created by this call, so later series of the same study never overwrite
    what the first one recorded.
    """
    config = config or ImportExportConfig()
    patient_existed = hierarchy.find_by_uid(DICOM_UID_NAME, identity.patient_id) != INVALID_ITEM_ID
    study_existed = hierarchy.find_by_uid(DICOM_UID_NAME, identity.study_instance_uid) != INVALID_ITEM_ID

    series_item = hierarchy.insert_dicom_series(
        identity.patient_id, identity.study_instance_uid, identity.series_instance_uid
    )

    if not patient_existed:
        patient_item = hierarchy.find_by_uid(DICOM_UID_NAME, identity.patient_id)
        if patient_item == INVALID_ITEM_ID:
            logger.error(
                "Patient item has not been created for series with instance UID %s",
                identity.series_instance_uid or "Missing UID",
            )
        else:
            hierarchy.set_attribute(patient_item, PATIENT_NAME_ATTRIBUTE, identity.patient_name)
            hierarchy.set_attribute(patient_item, PATIENT_ID_ATTRIBUTE, identity.patient_id)
            hierarchy.set_attribute(patient_item, PATIENT_SEX_ATTRIBUTE, identity.patient_sex)
            hierarchy.set_attribute(patient_item, PATIENT_BIRTH_DATE_ATTRIBUTE, identity.patient_birth_date)
            hierarchy.set_attribute(patient_item, PATIENT_COMMENTS_ATTRIBUTE, identity.patient_comments)
            hierarchy.set_name(patient_item, patient_item_name(identity, config))

    if not study_existed:
        study_item = hierarchy.find_by_uid(DICOM_UID_NAME, identity.study_instance_uid)
        if study_item == INVALID_ITEM_ID:
            logger.error(
                "Study item has not been created for series with instance UID %s",
                identity.series_instance_uid or "Missing UID",
            )
        else:
            hierarchy.set_attribute(study_item, STUDY_INSTANCE_UID_ATTRIBUTE, identity.study_instance_uid)
            hierarchy.set_attribute(study_item, STUDY_ID_ATTRIBUTE, identity.study_id)
            hierarchy.set_attribute(study_item, STUDY_DESCRIPTION_ATTRIBUTE, identity.study_description)
            hierarchy.set_attribute(study_item, STUDY_DATE_ATTRIBUTE, identity.study_date)
            hierarchy.set_attribute(study_item, STUDY_TIME_ATTRIBUTE, identity.study_time)
            hierarchy.set_name(study_item, study_item_name(identity, config))

    hierarchy.set_attribute(series_item, SERIES_MODALITY_ATTRIBUTE, identity.series_modality)
    hierarchy.set_attribute(series_item, SERIES_NUMBER_ATTRIBUTE, identity.series_number)
    # RT objects are single files, so one SOP instance UID per series
    if identity.sop_instance_uid:
        hierarchy.set_uid(series_item, DICOM_INSTANCE_UID_NAME, identity.sop_instance_uid)
    return series_item
