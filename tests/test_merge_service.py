"""Tests for the merge engine (confirm phase).

Coverage:
  1. New study: record + asset directory created, flags ignored
  2. Existing study, every overwrite flag combination, and which directory
     name each combination leaves the study with
  3. Whole-list component replacement keeps ids of uuid matches
  4. Tokens are single-use, owner-bound and claimed by exactly one confirm
  5. Non-members cannot import over a study
  6. Record write failure restores the previous asset tree
  7. Component import: overwrite in place, append new, wrong target study
"""

from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from studyport.core.exceptions import ForbiddenError, PersistenceError, StagingExpiredError
from studyport.models import db
from studyport.models.staging import StagingSession
from studyport.models.study import Study
from studyport.services import import_service, merge_service, staging_service, study_service
from studyport.services.asset_store import get_asset_store


def _upload_study(path, user):
    with open(path, "rb") as fh:
        return import_service.upload_study(fh, path.name, user)


def _upload_component(study, path, user):
    with open(path, "rb") as fh:
        return import_service.upload_component(study, fh, path.name, user)


def _snapshot(dir_name):
    base = get_asset_store().path(dir_name)
    return {
        p.relative_to(base).as_posix(): (p.read_bytes() if p.is_file() else None)
        for p in sorted(base.rglob("*"))
    }


@pytest.fixture()
def overwrite_archive(existing_study, study_data, component_data, make_study_archive):
    """Archive for ``existing_study`` with new fields, components and assets."""
    kept = existing_study.components[1]
    data = study_data(
        uuid=existing_study.uuid,
        dirName="existing",
        title="Reaction Times v2",
        description="second version",
        jsonData={"trials": 40},
        allowedWorkerTypes=["MTurk"],
        componentList=[
            component_data("Consent"),
            component_data("Trial v2", uuid=kept.uuid, active=False),
        ],
    )
    return make_study_archive(data, files={"index.html": b"<html>v2</html>", "new.js": b"js"},
                              dirs=["media"])


# ═════════════════════════════════════════════════════════════════════════
# New study
# ═════════════════════════════════════════════════════════════════════════


def test_new_study_created(user, study_data, make_study_archive):
    data = study_data(dirName="fresh")
    report = _upload_study(
        make_study_archive(data, files={"a.html": b"A", "lib/b.js": b"B"}, dirs=["empty"]), user)
    assert report["studyExists"] is False
    assert report["archiveName"] == "fresh"

    result = merge_service.confirm_study_import(report["token"], user, False, False)
    assert result["action"] == "created"
    assert result["state"] == "confirmed"

    study = Study.query.filter_by(uuid=data["uuid"]).one()
    assert study.dir_name == "fresh"
    assert study.has_member(user)
    assert [c.uuid for c in study.components] == [c["uuid"] for c in data["componentList"]]
    assert [c.position for c in study.components] == [1, 2]
    assert study.allowed_worker_types == ["Jatos", "PersonalSingle"]
    assert _snapshot("fresh") == {"a.html": b"A", "empty": None, "lib": None, "lib/b.js": b"B"}


def test_new_study_gets_suffixed_directory(user, study_data, make_study_archive, existing_study):
    report = _upload_study(make_study_archive(study_data(dirName="existing")), user)
    assert report["proposedOrExistingDirectoryPath"] == "existing_2"

    result = merge_service.confirm_study_import(report["token"], user, True, True)
    assert result["study"]["dirName"] == "existing_2"
    assert get_asset_store().exists("existing_2")
    assert _snapshot("existing")["index.html"] == b"<html>v1</html>"


# ═════════════════════════════════════════════════════════════════════════
# Existing study: overwrite flags
# ═════════════════════════════════════════════════════════════════════════


def test_overwrite_properties_and_assets(user, existing_study, overwrite_archive):
    kept = existing_study.components[1]
    kept_id, kept_uuid = kept.id, kept.uuid
    dropped_uuid = existing_study.components[0].uuid

    report = _upload_study(overwrite_archive, user)
    assert report["studyExists"] is True
    assert report["proposedOrExistingDirectoryPath"] == "existing"

    result = merge_service.confirm_study_import(report["token"], user, True, True)
    assert result["action"] == "overwritten"

    study = db.session.get(Study, existing_study.id)
    assert study.title == "Reaction Times v2"
    assert study.description == "second version"
    assert study.properties == {"trials": 40}
    assert study.allowed_worker_types == ["MTurk"]
    assert study.dir_name == "existing"
    titles = [(c.title, c.position) for c in study.components]
    assert titles == [("Consent", 1), ("Trial v2", 2)]
    assert study.components[1].id == kept_id
    assert study.components[1].uuid == kept_uuid
    assert study.components[1].active is False
    assert study.component_by_uuid(dropped_uuid) is None

    assert _snapshot("existing") == {
        "index.html": b"<html>v2</html>",
        "media": None,
        "new.js": b"js",
    }
    assert [p.name for p in get_asset_store().root.iterdir()] == ["existing"]


def test_overwrite_properties_only(user, existing_study, overwrite_archive):
    before = _snapshot("existing")
    report = _upload_study(overwrite_archive, user)

    merge_service.confirm_study_import(report["token"], user, True, False)

    study = db.session.get(Study, existing_study.id)
    assert study.title == "Reaction Times v2"
    assert [c.title for c in study.components] == ["Consent", "Trial v2"]
    assert _snapshot("existing") == before


def test_overwrite_assets_only(user, existing_study, overwrite_archive):
    components_before = [(c.id, c.title) for c in existing_study.components]
    report = _upload_study(overwrite_archive, user)

    result = merge_service.confirm_study_import(report["token"], user, False, True)
    assert result["action"] == "overwritten"

    study = db.session.get(Study, existing_study.id)
    assert study.title == "Reaction Times"
    assert [(c.id, c.title) for c in study.components] == components_before
    assert "old_only.txt" not in _snapshot("existing")
    assert _snapshot("existing")["index.html"] == b"<html>v2</html>"


def test_no_overwrite_is_noop(user, existing_study, overwrite_archive):
    before = _snapshot("existing")
    report = _upload_study(overwrite_archive, user)
    session = StagingSession.query.filter_by(token=report["token"]).one()

    result = merge_service.confirm_study_import(report["token"], user, False, False)
    assert result["action"] == "unchanged"
    assert result["state"] == "discarded"

    study = db.session.get(Study, existing_study.id)
    assert study.title == "Reaction Times"
    assert _snapshot("existing") == before
    assert not Path(session.staging_path).exists()



# ═════════════════════════════════════════════════════════════════════════
# Existing study: directory name
# ═════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def moved_study(user, existing_study):
    """``existing_study`` after its assets were renamed away from ``existing``."""
    return study_service.rename_asset_dir(existing_study, "changed_dirname", user)


def test_full_overwrite_adopts_archive_directory(user, moved_study, overwrite_archive):
    report = _upload_study(overwrite_archive, user)
    assert report["studyExists"] is True
    assert report["directoryExists"] is False
    assert report["proposedOrExistingDirectoryPath"] == "existing"

    result = merge_service.confirm_study_import(report["token"], user, True, True)
    assert result["study"]["dirName"] == "existing"
    assert db.session.get(Study, moved_study.id).dir_name == "existing"
    assert _snapshot("existing") == {
        "index.html": b"<html>v2</html>",
        "media": None,
        "new.js": b"js",
    }
    assert [p.name for p in get_asset_store().root.iterdir()] == ["existing"]


@pytest.mark.parametrize("properties,assets", [(True, False), (False, True)])
def test_partial_overwrite_keeps_directory(user, moved_study, overwrite_archive, properties, assets):
    report = _upload_study(overwrite_archive, user)
    merge_service.confirm_study_import(report["token"], user, properties, assets)

    assert db.session.get(Study, moved_study.id).dir_name == "changed_dirname"
    assert get_asset_store().exists("changed_dirname")
    assert not get_asset_store().exists("existing")


def test_full_overwrite_avoids_other_studys_directory(user, study_data, moved_study,
                                                      overwrite_archive):
    study_service.build_study(
        study_service.parse_study_document(study_data(dirName="existing")), "existing", user)
    db.session.commit()

    report = _upload_study(overwrite_archive, user)
    assert report["directoryExists"] is True
    assert report["proposedOrExistingDirectoryPath"] == "existing_2"

    result = merge_service.confirm_study_import(report["token"], user, True, True)
    assert result["study"]["dirName"] == "existing_2"
    assert not get_asset_store().exists("changed_dirname")


def test_failed_commit_moves_directory_back(user, moved_study, overwrite_archive, monkeypatch):
    before = _snapshot("changed_dirname")
    report = _upload_study(overwrite_archive, user)

    def _boom(study, fields):
        raise SQLAlchemyError("database went away")

    monkeypatch.setattr(study_service, "apply_study_fields", _boom)
    with pytest.raises(PersistenceError) as exc:
        merge_service.confirm_study_import(report["token"], user, True, True)

    assert exc.value.details["assetsRestored"] is True
    assert _snapshot("changed_dirname") == before
    assert [p.name for p in get_asset_store().root.iterdir()] == ["changed_dirname"]
    assert db.session.get(Study, moved_study.id).dir_name == "changed_dirname"



# ═════════════════════════════════════════════════════════════════════════
# Tokens & permissions
# ═════════════════════════════════════════════════════════════════════════


def test_token_is_single_use(user, study_data, make_study_archive):
    report = _upload_study(make_study_archive(study_data()), user)
    merge_service.confirm_study_import(report["token"], user, False, False)
    with pytest.raises(StagingExpiredError):
        merge_service.confirm_study_import(report["token"], user, False, False)


def test_confirm_claimed_by_other_worker_changes_nothing(user, existing_study, overwrite_archive,
                                                         monkeypatch):
    before = _snapshot("existing")
    report = _upload_study(overwrite_archive, user)
    real_get_active = staging_service.get_active

    def _claimed_elsewhere_after_lookup(*args, **kwargs):
        found = real_get_active(*args, **kwargs)
        db.session.execute(
            update(StagingSession)
            .where(StagingSession.id == found.id)
            .values(state="confirming")
            .execution_options(synchronize_session=False)
        )
        return found

    monkeypatch.setattr(staging_service, "get_active", _claimed_elsewhere_after_lookup)
    with pytest.raises(StagingExpiredError):
        merge_service.confirm_study_import(report["token"], user, True, True)

    assert _snapshot("existing") == before
    assert db.session.get(Study, existing_study.id).title == "Reaction Times"
    session = StagingSession.query.filter_by(token=report["token"]).one()
    assert session.state == "confirming"
    assert Path(session.staging_path).is_dir()


def test_foreign_confirm_rejected_and_session_kept(user, other_user, study_data, make_study_archive):
    report = _upload_study(make_study_archive(study_data()), user)
    with pytest.raises(StagingExpiredError):
        merge_service.confirm_study_import(report["token"], other_user, True, True)

    result = merge_service.confirm_study_import(report["token"], user, False, False)
    assert result["action"] == "created"


def test_non_member_upload_forbidden(other_user, existing_study, overwrite_archive, roots):
    with pytest.raises(ForbiddenError):
        _upload_study(overwrite_archive, other_user)
    assert list(roots["STAGING_ROOT"].iterdir()) == []
    assert StagingSession.query.filter_by(state="reported").count() == 0


# ═════════════════════════════════════════════════════════════════════════
# Record write failure
# ═════════════════════════════════════════════════════════════════════════


def test_failed_commit_restores_assets(user, existing_study, overwrite_archive, monkeypatch):
    before = _snapshot("existing")
    report = _upload_study(overwrite_archive, user)

    def _boom(study, fields):
        raise SQLAlchemyError("database went away")

    monkeypatch.setattr(study_service, "apply_study_fields", _boom)
    with pytest.raises(PersistenceError) as exc:
        merge_service.confirm_study_import(report["token"], user, True, True)

    assert exc.value.details == {"assetsChanged": True, "assetsRestored": True, "dirName": "existing"}
    assert _snapshot("existing") == before
    assert [p.name for p in get_asset_store().root.iterdir()] == ["existing"]
    assert db.session.get(Study, existing_study.id).title == "Reaction Times"
    assert StagingSession.query.filter_by(token=report["token"]).one().state == "discarded"


def test_failed_commit_removes_new_directory(user, study_data, make_study_archive, monkeypatch):
    report = _upload_study(make_study_archive(study_data(dirName="fresh"), files={"a": b"a"}), user)

    def _boom(fields, dir_name, owner):
        raise SQLAlchemyError("database went away")

    monkeypatch.setattr(study_service, "build_study", _boom)
    with pytest.raises(PersistenceError):
        merge_service.confirm_study_import(report["token"], user, False, False)
    assert not get_asset_store().exists("fresh")
    assert Study.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════
# Component import
# ═════════════════════════════════════════════════════════════════════════


def test_component_overwrites_uuid_match(user, existing_study, component_data, make_component_file):
    target = existing_study.components[0]
    target_id, target_uuid, target_position = target.id, target.uuid, target.position
    path = make_component_file(component_data("Intro v2", uuid=target_uuid, active=False,
                                              reloadable=True, jsonData={"x": 1}))

    report = _upload_component(existing_study, path, user)
    assert report["componentExists"] is True
    assert report["componentTitle"] == "Intro v2"

    result = merge_service.confirm_component_import(existing_study, report["token"], user)
    assert result["action"] == "updated"
    component = result["component"]
    assert (component["id"], component["uuid"], component["position"]) == (
        target_id, target_uuid, target_position)
    assert component["title"] == "Intro v2"
    assert component["active"] is False
    assert component["reloadable"] is True
    assert len(db.session.get(Study, existing_study.id).components) == 2


def test_component_appended_when_new(user, existing_study, component_data, make_component_file):
    existing_ids = {c.id for c in existing_study.components}
    path = make_component_file(component_data("Debrief"))

    report = _upload_component(existing_study, path, user)
    assert report["componentExists"] is False

    result = merge_service.confirm_component_import(existing_study, report["token"], user)
    assert result["action"] == "created"
    assert result["component"]["position"] == 3
    assert result["component"]["id"] not in existing_ids
    study = db.session.get(Study, existing_study.id)
    assert [c.title for c in study.components][-1] == "Debrief"


def test_component_token_bound_to_study(user, existing_study, study_data, component_data,
                                        make_component_file):
    other = study_service.build_study(
        study_service.parse_study_document(study_data(dirName="other")), "other", user)
    db.session.commit()

    report = _upload_component(existing_study, make_component_file(component_data("X")), user)
    with pytest.raises(StagingExpiredError):
        merge_service.confirm_component_import(other, report["token"], user)


def test_component_upload_requires_membership(other_user, existing_study, component_data,
                                              make_component_file):
    with pytest.raises(ForbiddenError):
        _upload_component(existing_study, make_component_file(component_data("X")), other_user)
