"""
Confirm phase of study and component imports (the merge engine).

Study confirm flags:

    study exists | properties | assets | effect
    -------------+------------+--------+-----------------------------------------
    no           |     -      |   -    | new record + new asset directory
    yes          |    yes     |  yes   | replace record fields and asset tree; adopt
                 |            |        | the archive's directory name
    yes          |    yes     |  no    | replace record fields only
    yes          |    no      |  yes   | replace asset tree only
    yes          |    no      |  no    | nothing; staging discarded

Ordering: the asset tree is swapped in first, then records are committed. If
the commit fails the previous tree is put back where possible and the outcome
is logged with ``event_type=import.reconcile``; PersistenceError carries the
same facts for the caller.

Every exit path (success, no-op, error) ends the staging session and removes
its directory.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from studyport.core.exceptions import PersistenceError
from studyport.models import db
from studyport.services import conflict_service, staging_service, study_service
from studyport.services.asset_store import get_asset_store

logger = logging.getLogger(__name__)


def _reconcile(undo, extra: dict) -> bool:
    """Run ``undo`` after a failed commit; return whether it worked."""
    if undo is None:
        return False
    try:
        undo()
    except OSError:
        logger.exception("Could not undo asset change", extra=extra)
        return False
    return True


def _commit_records(apply_records, *, undo_assets=None, assets_changed=False, extra=None,
                    message="Saving the imported study failed"):
    """Apply record changes and commit; on failure undo assets and raise.

    Raises:
        PersistenceError: the commit failed. ``details`` reports whether the
            asset directory had been changed and whether it was restored.
    """
    extra = dict(extra or {}, event_type="import.reconcile")
    try:
        apply_records()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        restored = _reconcile(undo_assets, extra) if assets_changed else False
        details = {
            "assetsChanged": assets_changed,
            "assetsRestored": restored,
            "dirName": extra.get("dir_name"),
        }
        logger.error(
            "Record write failed after asset change=%s restored=%s dir=%s; needs reconciliation: %s",
            assets_changed, restored, extra.get("dir_name"), exc,
            extra=extra,
        )
        raise PersistenceError(message, details=details) from exc


# ── Study ────────────────────────────────────────────────────────────────────


def _create_study(fields: dict, staged_assets, acting_user):
    store = get_asset_store()
    dir_name = conflict_service.propose_dir_name(fields["dir_name"], store)
    created = {}
    extra = {"study_uuid": fields["uuid"], "user_email": acting_user.email, "dir_name": dir_name}

    with store.lock(dir_name):
        store.create_from(staged_assets, dir_name)

        def _apply():
            created["study"] = study_service.build_study(fields, dir_name, acting_user)

        _commit_records(
            _apply,
            undo_assets=lambda: store.remove(dir_name),
            assets_changed=True,
            extra=extra,
        )
    study = created["study"]
    logger.info("Imported new study %s into %s", study.id, dir_name,
                extra={"study_uuid": study.uuid, "event_type": "import.created"})
    return study


def _overwrite_study(study, fields: dict, staged_assets, overwrite_properties: bool,
                     overwrite_assets: bool, acting_user):
    """Apply a flagged overwrite to an existing study.

    A full overwrite also takes over the archive's directory name
    (disambiguated if another study or directory holds it): the staged tree
    is created under the new name and the old directory is retired. Partial
    overwrites keep the study's current directory.
    """
    store = get_asset_store()
    old_name = study.dir_name
    new_name = old_name
    if overwrite_properties and overwrite_assets and fields["dir_name"] != old_name:
        new_name = conflict_service.propose_dir_name(fields["dir_name"], store)
    extra = {"study_uuid": study.uuid, "user_email": acting_user.email, "dir_name": new_name}

    with store.lock(min(old_name, new_name)), store.lock(max(old_name, new_name)):
        retired = None
        if new_name != old_name:
            store.create_from(staged_assets, new_name)
            try:
                retired = store.retire(old_name)
            except OSError:
                store.remove(new_name)
                raise

            def _undo():
                store.remove(new_name)
                store.restore(old_name, retired)
        else:
            if overwrite_assets:
                retired = store.replace_from(staged_assets, old_name)

            def _undo():
                store.restore(old_name, retired)

        def _apply():
            if overwrite_properties:
                study_service.apply_study_fields(study, fields)
            study.dir_name = new_name

        _commit_records(
            _apply,
            undo_assets=_undo,
            assets_changed=overwrite_assets,
            extra=extra,
        )
        store.drop_retired(retired)

    logger.info(
        "Overwrote study %s properties=%s assets=%s dir=%s",
        study.id, overwrite_properties, overwrite_assets, new_name,
        extra={"study_uuid": study.uuid, "event_type": "import.overwritten"},
    )
    return study


def confirm_study_import(token: str, acting_user, overwrite_properties: bool,
                         overwrite_assets: bool) -> dict:
    """Apply a reported study import.

    Args:
        token:                Staging token from the upload report.
        acting_user:          User confirming; must own the token.
        overwrite_properties: Replace record fields of an existing study.
        overwrite_assets:     Replace the asset tree of an existing study.

    Returns:
        {"action": created | overwritten | unchanged, "state": final staging
        state, "study": study dict}

    Raises:
        StagingExpiredError: token unknown, foreign, consumed or swept.
        ForbiddenError: study exists and the user is not a member.
        PersistenceError: record commit failed after asset change.
        OSError: filesystem failure while promoting the staged tree.
    """
    with staging_service.claim(token, acting_user, "study") as session:
        outcome = "discarded"
        try:
            data, staged_assets = staging_service.load_study(session)
            fields = study_service.parse_study_document(data)
            existing = study_service.find_study_by_uuid(fields["uuid"])

            if existing is None:
                study = _create_study(fields, staged_assets, acting_user)
                action = "created"
                outcome = "confirmed"
            else:
                study_service.check_member(existing, acting_user)
                if overwrite_properties or overwrite_assets:
                    study = _overwrite_study(existing, fields, staged_assets,
                                             overwrite_properties, overwrite_assets, acting_user)
                    action = "overwritten"
                    outcome = "confirmed"
                else:
                    study = existing
                    action = "unchanged"
                    logger.info("Study import of %s declined; nothing changed", existing.id,
                                extra={"study_uuid": existing.uuid, "event_type": "import.noop"})
        finally:
            staging_service.finish(session, outcome)

    return {
        "action": action,
        "state": outcome,
        "study": study.to_dict(include_components=True),
    }


# ── Component ────────────────────────────────────────────────────────────────


def confirm_component_import(study, token: str, acting_user) -> dict:
    """Apply a reported component import to ``study``.

    A uuid match is overwritten in place (id, uuid and position kept);
    otherwise the component is appended at the end of the study.

    Raises:
        StagingExpiredError: token unknown, foreign, consumed, swept, or
            staged for another study.
        ForbiddenError: the user is not a member of ``study``.
        PersistenceError: commit failed.
    """
    study_service.check_member(study, acting_user)
    with staging_service.claim(token, acting_user, "component", study=study) as session:
        outcome = "discarded"
        try:
            fields = study_service.parse_component_document(staging_service.load_component(session))
            result = {}

            def _apply():
                target = study.component_by_uuid(fields["uuid"])
                if target is None:
                    target = study_service.build_component(fields)
                    study.components.append(target)
                    result["action"] = "created"
                else:
                    study_service.apply_component_fields(target, fields)
                    result["action"] = "updated"
                result["component"] = target

            _commit_records(
                _apply,
                message="Saving the imported component failed",
                extra={"study_uuid": study.uuid, "user_email": acting_user.email},
            )
            outcome = "confirmed"
        finally:
            staging_service.finish(session, outcome)

    component = result["component"]
    action = result["action"]
    logger.info("Component %s %s in study %s at position %s",
                component.uuid, action, study.id, component.position,
                extra={"study_uuid": study.uuid, "event_type": f"import.component_{action}"})
    return {"action": action, "state": outcome, "component": component.to_dict()}
