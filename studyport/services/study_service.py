"""
Study record helpers shared by the import/export services.

Covers uuid/id lookup, membership checks, conversion between records and
properties documents, and renaming a study's asset directory.

Rules:
  - The acting user is always an explicit parameter (never from g).
  - Documents coming from an upload are validated here; anything missing or
    of the wrong type raises BadRequestError before a record is touched.
"""

from __future__ import annotations

import logging
import uuid as uuid_lib

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from studyport.core.exceptions import BadRequestError, ForbiddenError, NotFoundError, PersistenceError
from studyport.models import db
from studyport.models.study import Component, Study
from studyport.services.asset_store import get_asset_store, is_valid_dir_name

logger = logging.getLogger(__name__)


# ── Lookup ───────────────────────────────────────────────────────────────────


def get_study(study_id: int) -> Study:
    study = db.session.get(Study, study_id)
    if study is None:
        raise NotFoundError(resource="Study", resource_id=study_id)
    return study


def get_component(study: Study, component_id: int) -> Component:
    component = db.session.get(Component, component_id)
    if component is None or component.study_id != study.id:
        raise NotFoundError(resource="Component", resource_id=component_id)
    return component


def find_study_by_uuid(uuid: str) -> Study | None:
    return db.session.execute(
        select(Study).where(Study.uuid == uuid)
    ).scalar_one_or_none()


def find_study_by_dir_name(dir_name: str) -> Study | None:
    return db.session.execute(
        select(Study).where(Study.dir_name == dir_name)
    ).scalar_one_or_none()


def check_member(study: Study, user) -> None:
    """Raise ForbiddenError unless ``user`` is a member of ``study``."""
    if not study.has_member(user):
        logger.warning(
            "Access denied: %s is not a member of study %s",
            getattr(user, "email", None), study.id,
            extra={"user_email": getattr(user, "email", None), "study_uuid": study.uuid},
        )
        raise ForbiddenError(resource="Study", resource_id=study.id,
                             user=getattr(user, "email", None))


# ── Records → documents ──────────────────────────────────────────────────────


def component_to_document(component: Component) -> dict:
    return {
        "uuid": component.uuid,
        "title": component.title,
        "comments": component.comments,
        "active": component.active,
        "reloadable": component.reloadable,
        "htmlFilePath": component.html_file_path,
        "jsonData": component.properties,
    }


def study_to_document(study: Study) -> dict:
    return {
        "uuid": study.uuid,
        "title": study.title,
        "description": study.description,
        "comments": study.comments,
        "dirName": study.dir_name,
        "jsonData": study.properties,
        "allowedWorkerTypes": sorted(study.allowed_worker_types or []),
        "componentList": [component_to_document(c) for c in study.components],
    }


# ── Documents → validated field dicts ────────────────────────────────────────


def _required_str(data: dict, key: str, errors: dict) -> str | None:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        errors[key] = "required non-empty string"
        return None
    return value.strip()


def _optional_str(data: dict, key: str, errors: dict) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        errors[key] = "must be a string"
        return None
    return value


def _optional_bool(data: dict, key: str, default: bool, errors: dict) -> bool:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        errors[key] = "must be a boolean"
        return default
    return value


def _uuid(data: dict, errors: dict) -> str | None:
    value = _required_str(data, "uuid", errors)
    if value is None:
        return None
    try:
        uuid_lib.UUID(value)
    except ValueError:
        errors["uuid"] = "not a valid uuid"
        return None
    return value


def parse_component_document(data: dict) -> dict:
    """Validate a component document body and return record fields.

    Raises:
        BadRequestError: required fields missing or wrongly typed.
    """
    if not isinstance(data, dict):
        raise BadRequestError("Component entry must be an object")
    errors: dict = {}
    fields = {
        "uuid": _uuid(data, errors),
        "title": _required_str(data, "title", errors),
        "comments": _optional_str(data, "comments", errors),
        "active": _optional_bool(data, "active", True, errors),
        "reloadable": _optional_bool(data, "reloadable", False, errors),
        "html_file_path": _optional_str(data, "htmlFilePath", errors),
        "properties": data.get("jsonData"),
    }
    if errors:
        raise BadRequestError("Invalid component properties", details=errors)
    return fields


def parse_study_document(data: dict) -> dict:
    """Validate a study document body and return record fields.

    ``components`` in the result is the staged component list in order.

    Raises:
        BadRequestError: required fields missing, wrongly typed, an invalid
            directory name, or duplicate component uuids.
    """
    errors: dict = {}
    fields = {
        "uuid": _uuid(data, errors),
        "title": _required_str(data, "title", errors),
        "description": _optional_str(data, "description", errors),
        "comments": _optional_str(data, "comments", errors),
        "dir_name": _required_str(data, "dirName", errors),
        "properties": data.get("jsonData"),
    }
    if fields["dir_name"] is not None and not is_valid_dir_name(fields["dir_name"]):
        errors["dirName"] = "invalid directory name"

    workers = data.get("allowedWorkerTypes", [])
    if not isinstance(workers, list) or not all(isinstance(w, str) for w in workers):
        errors["allowedWorkerTypes"] = "must be a list of strings"
        workers = []
    fields["allowed_worker_types"] = sorted(set(workers))

    raw_components = data.get("componentList", [])
    if not isinstance(raw_components, list):
        errors["componentList"] = "must be a list"
        raw_components = []
    if errors:
        raise BadRequestError("Invalid study properties", details=errors)

    components = [parse_component_document(c) for c in raw_components]
    seen = set()
    for component in components:
        if component["uuid"] in seen:
            raise BadRequestError(
                "Duplicate component uuid in study",
                details={"uuid": component["uuid"]},
            )
        seen.add(component["uuid"])
    fields["components"] = components
    return fields


# ── Field application ────────────────────────────────────────────────────────


def apply_component_fields(component: Component, fields: dict) -> Component:
    """Overwrite every mutable component field; id, uuid and position stay."""
    component.title = fields["title"]
    component.comments = fields["comments"]
    component.active = fields["active"]
    component.reloadable = fields["reloadable"]
    component.html_file_path = fields["html_file_path"]
    component.properties = fields["properties"]
    return component


def build_component(fields: dict) -> Component:
    component = Component(uuid=fields["uuid"])
    return apply_component_fields(component, fields)


def apply_study_fields(study: Study, fields: dict) -> Study:
    """Replace the study's properties and component list wholesale.

    Staged components overwrite their uuid-matched counterparts in place or
    are appended as new; components missing from ``fields`` are deleted. The
    resulting order is the staged order and positions are renumbered from 1.
    ``dir_name`` is left alone.
    """
    study.title = fields["title"]
    study.description = fields["description"]
    study.comments = fields["comments"]
    study.properties = fields["properties"]
    study.allowed_worker_types = list(fields["allowed_worker_types"])

    existing = {c.uuid: c for c in study.components}
    new_list = []
    for staged in fields["components"]:
        component = existing.get(staged["uuid"])
        if component is None:
            component = build_component(staged)
        else:
            apply_component_fields(component, staged)
        new_list.append(component)
    study.components = new_list
    study.components.reorder()
    return study


def build_study(fields: dict, dir_name: str, owner) -> Study:
    """Create (but do not commit) a new study from validated fields."""
    study = Study(uuid=fields["uuid"], dir_name=dir_name, allowed_worker_types=[])
    study.members.append(owner)
    apply_study_fields(study, fields)
    db.session.add(study)
    return study


# ── Asset directory ──────────────────────────────────────────────────────────


def rename_asset_dir(study: Study, new_name: str, acting_user) -> Study:
    """Rename the study's asset directory and record the new name.

    Raises:
        ForbiddenError: acting user is not a member.
        BadRequestError: invalid name, or the name is taken by another study
            or an existing directory.
    """
    check_member(study, acting_user)
    if not is_valid_dir_name(new_name):
        raise BadRequestError("Invalid asset directory name", details={"dirName": new_name})
    if new_name == study.dir_name:
        return study
    store = get_asset_store()
    if find_study_by_dir_name(new_name) is not None or store.exists(new_name):
        raise BadRequestError("Asset directory name already taken", details={"dirName": new_name})

    old_name = study.dir_name
    with store.lock(old_name), store.lock(new_name):
        moved = store.exists(old_name)
        if moved:
            store.rename(old_name, new_name)
        study.dir_name = new_name
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            if moved:
                store.rename(new_name, old_name)
            raise PersistenceError("Renaming the asset directory failed",
                                   details={"dirName": old_name}) from exc
    logger.info("Study %s asset directory renamed %s -> %s", study.id, old_name, new_name,
                extra={"study_uuid": study.uuid})
    return study
