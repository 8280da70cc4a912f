"""
Export of persisted studies and components.

Exports are read-only with respect to records and the live asset tree. The
study snapshot is packed while holding the directory lock, so an import
overwriting the same directory waits until the archive is complete.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from flask import current_app

from studyport.services import archive_codec, study_service
from studyport.services.asset_store import get_asset_store

logger = logging.getLogger(__name__)


def _fresh_export_dir() -> Path:
    root = Path(current_app.config["EXPORT_ROOT"])
    root.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix="export-", dir=root))


def export_study(study, acting_user) -> Path:
    """Pack ``study`` and a snapshot of its asset directory into a new archive.

    Returns:
        Path of ``<dir_name>.zip`` inside a fresh directory under EXPORT_ROOT.
        The caller owns (and should remove) that directory.

    Raises:
        ForbiddenError: the user is not a member of the study.
        OSError: reading assets or writing the archive failed.
    """
    study_service.check_member(study, acting_user)
    store = get_asset_store()
    document = study_service.study_to_document(study)
    target_dir = _fresh_export_dir()

    with store.lock(study.dir_name):
        asset_dir = store.path(study.dir_name)
        if not asset_dir.is_dir():
            logger.warning("Study %s has no asset directory %s; exporting properties only",
                           study.id, study.dir_name, extra={"study_uuid": study.uuid})
            asset_dir = None
        archive_path = archive_codec.pack(document, asset_dir, study.dir_name, target_dir)

    logger.info("Exported study %s to %s", study.id, archive_path.name,
                extra={"study_uuid": study.uuid, "user_email": acting_user.email,
                       "event_type": "export.study"})
    return archive_path


def export_component(component, acting_user) -> Path:
    """Write the component's properties document as ``<title>.jac``."""
    study_service.check_member(component.study, acting_user)
    target_dir = _fresh_export_dir()
    name = archive_codec.safe_base_name(component.title, fallback="component")
    path = archive_codec.write_document(
        study_service.component_to_document(component),
        target_dir / f"{name}{archive_codec.COMPONENT_DOCUMENT_SUFFIX}",
    )
    logger.info("Exported component %s of study %s", component.id, component.study_id,
                extra={"study_uuid": component.study.uuid, "user_email": acting_user.email,
                       "event_type": "export.component"})
    return path
