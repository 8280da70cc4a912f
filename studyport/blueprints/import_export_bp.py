"""Study import/export blueprint.

REST API for the two-phase import protocol and for exports.

Endpoint groups:
  Study import        POST   /api/v1/studies/import
                      POST   /api/v1/studies/import/<token>/confirm
                      DELETE /api/v1/studies/import/<token>
  Component import    POST   /api/v1/studies/<id>/components/import
                      POST   /api/v1/studies/<id>/components/import/<token>/confirm
                      DELETE /api/v1/studies/<id>/components/import/<token>
  Export              GET    /api/v1/studies/<id>/export
                      GET    /api/v1/studies/<id>/components/<cid>/export
  Asset directory     PUT    /api/v1/studies/<id>/directory

The acting user is resolved once per request and handed to the service
layer, which owns all business logic and commits.
"""

from __future__ import annotations

import logging
import os

from flask import Blueprint, jsonify, request, send_file
from werkzeug.exceptions import HTTPException

from studyport.auth import get_acting_user
from studyport.core.exceptions import (
    BadRequestError,
    CorruptArchiveError,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    StagingExpiredError,
)
from studyport.services import export_service, import_service, merge_service, study_service
from studyport.services.asset_store import discard_tree
from studyport.utils.errors import E, api_error

logger = logging.getLogger(__name__)

import_export_bp = Blueprint("import_export", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@import_export_bp.errorhandler(CorruptArchiveError)
def _handle_corrupt(error: CorruptArchiveError):
    return api_error(E.ARCHIVE_CORRUPT, str(error), details=error.details)


@import_export_bp.errorhandler(BadRequestError)
def _handle_bad_request(error: BadRequestError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@import_export_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, f"Not allowed to access {error.resource}")


@import_export_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@import_export_bp.errorhandler(StagingExpiredError)
def _handle_staging_expired(error: StagingExpiredError):
    return api_error(E.STAGING_EXPIRED, str(error))


@import_export_bp.errorhandler(PersistenceError)
def _handle_persistence(error: PersistenceError):
    return api_error(E.DATABASE, str(error), details=error.details)


@import_export_bp.errorhandler(OSError)
def _handle_filesystem(error: OSError):
    logger.exception("Filesystem error endpoint=%s", request.endpoint)
    return api_error(E.FILESYSTEM, "Could not read or write study files")


@import_export_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.description}), error.code
    logger.exception("Unexpected error in import_export_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Request helpers ───────────────────────────────────────────────────────────


def _uploaded_file(field: str):
    """Return the multipart file stored under ``field`` or raise BadRequestError."""
    file = request.files.get(field)
    if file is None or not file.filename:
        raise BadRequestError(f"Multipart field '{field}' with a file is required",
                              details={"field": field})
    return file


def _flag(data: dict, key: str) -> bool:
    value = data.get(key, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise BadRequestError(f"{key} must be a boolean", details={"field": key})
    return value


def _send_export(path, mimetype: str):
    """Stream ``path`` as an attachment and remove its export directory afterwards."""
    response = send_file(
        os.fspath(path),
        mimetype=mimetype,
        as_attachment=True,
        download_name=path.name,
    )
    response.call_on_close(lambda: discard_tree(path.parent))
    return response


# ═════════════════════════════════════════════════════════════════════════
# Study import  (/api/v1/studies/import)
# ═════════════════════════════════════════════════════════════════════════


@import_export_bp.route("/studies/import", methods=["POST"])
def upload_study():
    """Stage a study archive and report conflicts with persisted state.

    Form: study (file, required)
    Returns: {studyExists, studyTitle, directoryExists,
              proposedOrExistingDirectoryPath, archiveName, token}
    """
    file = _uploaded_file("study")
    report = import_service.upload_study(file.stream, file.filename, get_acting_user())
    return jsonify(report), 200


@import_export_bp.route("/studies/import/<token>/confirm", methods=["POST"])
def confirm_study(token: str):
    """Apply a staged study import.

    Body: {overwritePropertiesConfirm?: bool, overwriteAssetsConfirm?: bool}
    Returns: {action, state, study}
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise BadRequestError("JSON object body expected")
    result = merge_service.confirm_study_import(
        token,
        get_acting_user(),
        overwrite_properties=_flag(data, "overwritePropertiesConfirm"),
        overwrite_assets=_flag(data, "overwriteAssetsConfirm"),
    )
    return jsonify(result), 200


@import_export_bp.route("/studies/import/<token>", methods=["DELETE"])
def discard_study(token: str):
    """Drop a staged study import. Unknown or finished tokens are ignored."""
    import_service.discard_import(token, get_acting_user())
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Component import  (/api/v1/studies/<id>/components/import)
# ═════════════════════════════════════════════════════════════════════════


@import_export_bp.route("/studies/<int:study_id>/components/import", methods=["POST"])
def upload_component(study_id: int):
    """Stage a component document for the study.

    Form: component (file, required)
    Returns: {componentExists, componentTitle, token}
    """
    study = study_service.get_study(study_id)
    file = _uploaded_file("component")
    report = import_service.upload_component(study, file.stream, file.filename, get_acting_user())
    return jsonify(report), 200


@import_export_bp.route("/studies/<int:study_id>/components/import/<token>/confirm",
                        methods=["POST"])
def confirm_component(study_id: int, token: str):
    study = study_service.get_study(study_id)
    result = merge_service.confirm_component_import(study, token, get_acting_user())
    return jsonify(result), 200


@import_export_bp.route("/studies/<int:study_id>/components/import/<token>", methods=["DELETE"])
def discard_component(study_id: int, token: str):
    """Drop a staged component import. Tokens of other studies are ignored."""
    study = study_service.get_study(study_id)
    import_service.discard_import(token, get_acting_user(), study=study)
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Export
# ═════════════════════════════════════════════════════════════════════════


@import_export_bp.route("/studies/<int:study_id>/export", methods=["GET"])
def export_study(study_id: int):
    """Download the study as ``<dirName>.zip``."""
    study = study_service.get_study(study_id)
    path = export_service.export_study(study, get_acting_user())
    return _send_export(path, "application/zip")


@import_export_bp.route("/studies/<int:study_id>/components/<int:component_id>/export",
                        methods=["GET"])
def export_component(study_id: int, component_id: int):
    """Download one component as ``<title>.jac``."""
    study = study_service.get_study(study_id)
    component = study_service.get_component(study, component_id)
    path = export_service.export_component(component, get_acting_user())
    return _send_export(path, "application/json")


# ═════════════════════════════════════════════════════════════════════════
# Asset directory
# ═════════════════════════════════════════════════════════════════════════


@import_export_bp.route("/studies/<int:study_id>/directory", methods=["PUT"])
def rename_directory(study_id: int):
    """Rename the study's asset directory.

    Body: {dirName: str}
    Returns: study dict
    """
    data = request.get_json(silent=True) or {}
    new_name = data.get("dirName") if isinstance(data, dict) else None
    if not isinstance(new_name, str) or not new_name.strip():
        raise BadRequestError("dirName is required", details={"field": "dirName"})
    study = study_service.get_study(study_id)
    study = study_service.rename_asset_dir(study, new_name.strip(), get_acting_user())
    return jsonify(study.to_dict()), 200
