"""Tests for conflict detection.

Coverage:
  1. Unknown uuid → studyExists=false, directory proposal
  2. Directory name taken by a record or on disk → suffixed proposal
  3. Known uuid → existing study's directory is reported
  4. Known uuid owned by someone else → ForbiddenError
  5. Lookup is by uuid, never by title
  6. Component lookup is scoped to the target study
"""

import pytest

from studyport.core.exceptions import BadRequestError, ForbiddenError
from studyport.services import conflict_service, study_service


def test_new_study_free_directory(user, study_data):
    fields = study_service.parse_study_document(study_data(dirName="fresh"))
    report, existing = conflict_service.detect_study_conflict(fields, user)
    assert existing is None
    assert report.to_dict() == {
        "studyExists": False,
        "studyTitle": "Reaction Times",
        "directoryExists": False,
        "proposedOrExistingDirectoryPath": "fresh",
    }


def test_new_study_directory_taken_by_record(user, study_data, existing_study):
    fields = study_service.parse_study_document(study_data(dirName="existing"))
    report, existing = conflict_service.detect_study_conflict(fields, user)
    assert existing is None
    assert report.directory_exists is True
    assert report.proposed_directory_name == "existing_2"


def test_new_study_directory_taken_on_disk(user, study_data, roots):
    (roots["ASSETS_ROOT"] / "on_disk").mkdir()
    (roots["ASSETS_ROOT"] / "on_disk_2").mkdir()
    fields = study_service.parse_study_document(study_data(dirName="on_disk"))
    report, _ = conflict_service.detect_study_conflict(fields, user)
    assert report.directory_exists is True
    assert report.proposed_directory_name == "on_disk_3"


def test_directory_suffixes_exhausted(roots, monkeypatch):
    monkeypatch.setattr(conflict_service, "MAX_DIR_SUFFIX", 3)
    for name in ("full", "full_2"):
        (roots["ASSETS_ROOT"] / name).mkdir()
    with pytest.raises(BadRequestError):
        conflict_service.propose_dir_name("full")


def test_existing_study_reports_its_directory(user, study_data, existing_study):
    fields = study_service.parse_study_document(
        study_data(uuid=existing_study.uuid, dirName="existing", title="New title"))
    report, existing = conflict_service.detect_study_conflict(fields, user)
    assert existing.id == existing_study.id
    assert report.study_exists is True
    assert report.study_title == "New title"
    assert report.directory_exists is True
    assert report.proposed_directory_name == "existing"


def test_existing_study_reports_archive_directory(user, study_data, existing_study, roots):
    fields = study_service.parse_study_document(
        study_data(uuid=existing_study.uuid, dirName="renamed_in_archive"))
    report, _ = conflict_service.detect_study_conflict(fields, user)
    assert report.study_exists is True
    assert report.directory_exists is False
    assert report.proposed_directory_name == "renamed_in_archive"

    (roots["ASSETS_ROOT"] / "renamed_in_archive").mkdir()
    report, _ = conflict_service.detect_study_conflict(fields, user)
    assert report.directory_exists is True
    assert report.proposed_directory_name == "renamed_in_archive_2"


def test_existing_study_of_other_user_forbidden(other_user, study_data, existing_study):
    fields = study_service.parse_study_document(study_data(uuid=existing_study.uuid))
    with pytest.raises(ForbiddenError):
        conflict_service.detect_study_conflict(fields, other_user)


def test_same_title_different_uuid_is_new(user, study_data, existing_study):
    fields = study_service.parse_study_document(
        study_data(title=existing_study.title, dirName="other"))
    report, existing = conflict_service.detect_study_conflict(fields, user)
    assert existing is None
    assert report.study_exists is False


def test_component_lookup_scoped_to_study(user, study_data, component_data, existing_study):
    known = existing_study.components[0]
    fields = study_service.parse_component_document(component_data("Renamed", uuid=known.uuid))
    conflict = conflict_service.detect_component_conflict(existing_study, fields)
    assert conflict.to_dict() == {"componentExists": True, "componentTitle": "Renamed"}
    assert conflict.existing_title == known.title

    other_fields = study_service.parse_study_document(study_data(dirName="second"))
    second = study_service.build_study(other_fields, "second", user)
    assert conflict_service.detect_component_conflict(second, fields).component_exists is False
