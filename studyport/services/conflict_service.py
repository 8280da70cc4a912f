"""
Conflict detection between a staged upload and persisted state.

Lookup is by uuid only, never by title. Detection is read-only: it neither
writes records nor touches the live asset tree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from studyport.core.exceptions import BadRequestError
from studyport.models.study import Study
from studyport.services import study_service
from studyport.services.asset_store import get_asset_store

logger = logging.getLogger(__name__)

MAX_DIR_SUFFIX = 1000


@dataclass
class StudyConflict:
    study_exists: bool
    study_title: str
    directory_exists: bool
    proposed_directory_name: str

    def to_dict(self) -> dict:
        return {
            "studyExists": self.study_exists,
            "studyTitle": self.study_title,
            "directoryExists": self.directory_exists,
            "proposedOrExistingDirectoryPath": self.proposed_directory_name,
        }


@dataclass
class ComponentConflict:
    component_exists: bool
    component_title: str
    existing_title: str | None = None

    def to_dict(self) -> dict:
        return {
            "componentExists": self.component_exists,
            "componentTitle": self.component_title,
        }


def _dir_name_taken(name: str, store) -> bool:
    if study_service.find_study_by_dir_name(name) is not None:
        return True
    return store.exists(name)


def propose_dir_name(wanted: str, store=None) -> str:
    """Return ``wanted`` or ``wanted_<n>`` for the first n >= 2 that is free.

    A name is free when no study owns it and no directory of that name
    exists beneath the assets root.
    """
    store = store or get_asset_store()
    if not _dir_name_taken(wanted, store):
        return wanted
    for suffix in range(2, MAX_DIR_SUFFIX):
        candidate = f"{wanted}_{suffix}"
        if not _dir_name_taken(candidate, store):
            return candidate
    raise BadRequestError("No free asset directory name", details={"dirName": wanted})


def detect_study_conflict(fields: dict, acting_user) -> tuple[StudyConflict, Study | None]:
    """Compare validated staged study fields against persisted state.

    The proposal is always derived from the staged ``dirName``. For an
    existing study that already lives under that name the name is reported
    as is; otherwise it is disambiguated like a new study's. Only a full
    overwrite moves an existing study to the proposed name.

    Args:
        fields:      Output of ``study_service.parse_study_document``.
        acting_user: User performing the import.

    Returns:
        (report, existing study or None)

    Raises:
        ForbiddenError: a study with the uuid exists and the acting user is
            not one of its members.
    """
    store = get_asset_store()
    existing = study_service.find_study_by_uuid(fields["uuid"])
    wanted = fields["dir_name"]

    if existing is not None:
        study_service.check_member(existing, acting_user)
        if wanted == existing.dir_name:
            directory_exists, proposed = store.exists(wanted), wanted
        else:
            directory_exists, proposed = _dir_name_taken(wanted, store), propose_dir_name(wanted, store)
        report = StudyConflict(
            study_exists=True,
            study_title=fields["title"],
            directory_exists=directory_exists,
            proposed_directory_name=proposed,
        )
    else:
        report = StudyConflict(
            study_exists=False,
            study_title=fields["title"],
            directory_exists=_dir_name_taken(wanted, store),
            proposed_directory_name=propose_dir_name(wanted, store),
        )

    logger.debug(
        "Study conflict uuid=%s exists=%s dir=%s",
        fields["uuid"], report.study_exists, report.proposed_directory_name,
        extra={"study_uuid": fields["uuid"], "event_type": "import.detect"},
    )
    return report, existing


def detect_component_conflict(study: Study, fields: dict) -> ComponentConflict:
    """Look the staged component up by uuid within ``study`` only."""
    existing = study.component_by_uuid(fields["uuid"])
    return ComponentConflict(
        component_exists=existing is not None,
        component_title=fields["title"],
        existing_title=existing.title if existing is not None else None,
    )
