"""
Shared pytest fixtures for the study import/export test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - roots: Per-test ASSETS_ROOT / STAGING_ROOT / EXPORT_ROOT (autouse)
    - client: Flask test client (function-scoped)
    - user, other_user: members / non-members of test studies
    - study_data, make_study_archive, make_component_file: upload builders
    - existing_study: persisted study with two components and assets on disk
"""

import json
import uuid
import zipfile

import pytest

from studyport import create_app
from studyport.models import db as _db
from studyport.models.study import User
from studyport.services import study_service
from studyport.services.asset_store import AssetStore


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def roots(app, tmp_path, monkeypatch):
    """Point every filesystem root at a fresh temporary directory."""
    paths = {
        "ASSETS_ROOT": tmp_path / "assets",
        "STAGING_ROOT": tmp_path / "staging",
        "EXPORT_ROOT": tmp_path / "export",
    }
    for key, path in paths.items():
        monkeypatch.setitem(app.config, key, str(path))
    monkeypatch.setitem(app.extensions, "asset_store", AssetStore.from_app(app))
    return paths


@pytest.fixture(autouse=True)
def session(app, _setup_db, roots):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identities ───────────────────────────────────────────────────────────


def _make_user(email):
    user = User(email=email, name=email.split("@")[0])
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def user():
    return _make_user("alice@example.org")


@pytest.fixture()
def other_user():
    return _make_user("mallory@example.org")


# ── Upload builders ──────────────────────────────────────────────────────


def _component_data(title, **overrides):
    data = {
        "uuid": str(uuid.uuid4()),
        "title": title,
        "comments": None,
        "active": True,
        "reloadable": False,
        "htmlFilePath": f"{title.lower().replace(' ', '_')}.html",
        "jsonData": {"title": title},
    }
    data.update(overrides)
    return data


@pytest.fixture()
def study_data():
    """Return a builder for study document bodies."""

    def _build(**overrides):
        data = {
            "uuid": str(uuid.uuid4()),
            "title": "Reaction Times",
            "description": "Simple reaction time study",
            "comments": None,
            "dirName": "reaction_times",
            "jsonData": {"trials": 20},
            "allowedWorkerTypes": ["PersonalSingle", "Jatos"],
            "componentList": [_component_data("Intro"), _component_data("Trial")],
        }
        data.update(overrides)
        return data

    return _build


@pytest.fixture()
def component_data():
    """Return a builder for component document bodies."""
    return _component_data


@pytest.fixture()
def make_study_archive(tmp_path):
    """Return a builder writing a study ZIP archive and returning its path.

    ``files`` maps POSIX paths (relative to the asset directory) to bytes;
    ``dirs`` lists empty directories to include.
    """
    counter = {"n": 0}

    def _build(data, files=None, dirs=(), name=None, version=1):
        counter["n"] += 1
        base = name or data.get("dirName") or "study"
        path = tmp_path / "uploads" / f"{counter['n']}" / f"{base}.zip"
        path.parent.mkdir(parents=True)
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr(f"{base}.jas", json.dumps({"version": version, "data": data}))
            archive.writestr(f"{base}/", b"")
            for rel in dirs:
                archive.writestr(f"{base}/{rel.rstrip('/')}/", b"")
            for rel, content in (files or {}).items():
                archive.writestr(f"{base}/{rel}", content)
        return path

    return _build


@pytest.fixture()
def make_component_file(tmp_path):
    """Return a builder writing a ``.jac`` component document."""

    def _build(data, name="component.jac"):
        path = tmp_path / "uploads" / uuid.uuid4().hex[:8] / name
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"version": 1, "data": data}), encoding="utf-8")
        return path

    return _build


# ── Persisted study ──────────────────────────────────────────────────────


@pytest.fixture()
def existing_study(user, study_data, roots):
    """A study owned by ``user`` with two components and assets on disk."""
    fields = study_service.parse_study_document(study_data(dirName="existing"))
    study = study_service.build_study(fields, "existing", user)
    _db.session.commit()

    asset_dir = roots["ASSETS_ROOT"] / "existing"
    (asset_dir / "img").mkdir(parents=True)
    (asset_dir / "index.html").write_bytes(b"<html>v1</html>")
    (asset_dir / "img" / "logo.png").write_bytes(b"\x89PNG-v1")
    (asset_dir / "old_only.txt").write_bytes(b"stale")
    return study
