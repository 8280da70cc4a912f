"""
Upload phase of study and component imports.

stage → validate document → detect conflicts → store report. Nothing here
writes a study/component record or touches the live asset tree; a failure at
any step discards the staging session before the exception propagates.
"""

from __future__ import annotations

import logging

from studyport.services import conflict_service, staging_service, study_service

logger = logging.getLogger(__name__)


def upload_study(stream, archive_name: str, acting_user) -> dict:
    """Stage a study archive and report how it relates to persisted state.

    Returns:
        Report dict: studyExists, studyTitle, directoryExists,
        proposedOrExistingDirectoryPath, archiveName, token.

    Raises:
        CorruptArchiveError, BadRequestError: unreadable or invalid archive.
        ForbiddenError: the study exists and the user is not a member.
    """
    session = staging_service.stage(stream, archive_name, acting_user, "study")
    try:
        data, _ = staging_service.load_study(session)
        fields = study_service.parse_study_document(data)
        conflict, _ = conflict_service.detect_study_conflict(fields, acting_user)
    except Exception:
        staging_service.discard(session)
        raise

    report = conflict.to_dict()
    report["archiveName"] = session.archive_name
    report["token"] = session.token
    staging_service.mark_reported(session, report)
    logger.info(
        "Study import staged uuid=%s exists=%s",
        fields["uuid"], conflict.study_exists,
        extra={"study_uuid": fields["uuid"], "user_email": acting_user.email,
               "event_type": "import.reported"},
    )
    return report


def upload_component(study, stream, archive_name: str, acting_user) -> dict:
    """Stage a component document for ``study`` and report whether it exists.

    Returns:
        Report dict: componentExists, componentTitle, token.

    Raises:
        ForbiddenError: the user is not a member of ``study``.
        CorruptArchiveError, BadRequestError: unreadable or invalid document.
    """
    study_service.check_member(study, acting_user)
    session = staging_service.stage(stream, archive_name, acting_user, "component", study=study)
    try:
        fields = study_service.parse_component_document(staging_service.load_component(session))
        conflict = conflict_service.detect_component_conflict(study, fields)
    except Exception:
        staging_service.discard(session)
        raise

    report = conflict.to_dict()
    report["token"] = session.token
    staging_service.mark_reported(session, report)
    logger.info(
        "Component import staged for study %s uuid=%s exists=%s",
        study.id, fields["uuid"], conflict.component_exists,
        extra={"study_uuid": study.uuid, "user_email": acting_user.email,
               "event_type": "import.reported"},
    )
    return report


def discard_import(token: str, acting_user, study=None) -> bool:
    """Drop a pending study import, or with ``study`` a component import for it."""
    kind = "study" if study is None else "component"
    return staging_service.discard_token(token, acting_user, kind, study=study)
