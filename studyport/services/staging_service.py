"""
Staging area for uploaded archives.

An upload is written to ``STAGING_ROOT/<token>/`` and extracted there; it
never touches the live asset tree. The ``staging_sessions`` table maps the
token to {owner, staging path, expiry, state}.

Rules:
  - Tokens are generated here and bound to the uploading identity. A token
    looked up by anyone else behaves exactly like an unknown token.
  - An identity has at most one pending study import; staging a new one
    discards the previous.
  - Every state change is a conditional UPDATE on the session row, so
    confirm, discard and sweep never act on the same session twice, even
    from different worker processes.
  - ``discard`` is idempotent and never removes a claimed session's tree.
  - db.session.commit() for staging rows happens only in this file.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from flask import current_app
from sqlalchemy import select, update

from studyport.core.exceptions import BadRequestError, StagingExpiredError
from studyport.models import db
from studyport.models.staging import (
    PENDING_STATES,
    STAGING_KINDS,
    TERMINAL_STATES,
    StagingSession,
    validate_staging_transition,
)
from studyport.services import archive_codec
from studyport.services.asset_store import discard_tree

logger = logging.getLogger(__name__)

UPLOAD_FILE_NAME = "upload.bin"
EXTRACT_DIR_NAME = "extracted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _staging_root() -> Path:
    root = Path(current_app.config["STAGING_ROOT"])
    root.mkdir(parents=True, exist_ok=True)
    return root


def _max_age() -> timedelta:
    return timedelta(seconds=current_app.config["STAGING_MAX_AGE_SECONDS"])


def _log_extra(session: StagingSession) -> dict:
    return {
        "staging_token": session.token[:8],
        "user_email": session.owner.email if session.owner else None,
        "event_type": f"staging.{session.state}",
    }


# ── Creation ─────────────────────────────────────────────────────────────────


def stage(stream, archive_name: str, owner, kind: str, study=None) -> StagingSession:
    """Write an upload to a fresh staging directory and extract it.

    Args:
        stream:       Readable binary stream of the uploaded file.
        archive_name: Client-side file name; only its sanitized stem is kept.
        owner:        Uploading User.
        kind:         "study" (ZIP archive) or "component" (``.jac`` document).
        study:        Target Study of a component import.

    Returns:
        The new StagingSession in state ``uploaded``.

    Raises:
        CorruptArchiveError / BadRequestError: unreadable upload; the staging
            directory is removed and no session row is kept.
        OSError: disk failure; likewise cleaned up.
    """
    if kind not in STAGING_KINDS:
        raise ValueError(f"Unknown staging kind: {kind}")

    if kind == "study":
        _discard_pending_studies(owner)

    token = secrets.token_urlsafe(24)
    staging_dir = _staging_root() / token
    staging_dir.mkdir(parents=True)
    upload_path = staging_dir / UPLOAD_FILE_NAME
    try:
        with open(upload_path, "wb") as handle:
            while True:
                chunk = stream.read(1024 * 1024)
                if not chunk:
                    break
                handle.write(chunk)
        if upload_path.stat().st_size == 0:
            raise BadRequestError("Uploaded file is empty")
        if kind == "study":
            archive_codec.unpack(upload_path, staging_dir / EXTRACT_DIR_NAME)
        else:
            archive_codec.read_document(upload_path)
    except Exception:
        discard_tree(staging_dir)
        raise

    base = Path(archive_name or "").stem
    session = StagingSession(
        token=token,
        kind=kind,
        owner=owner,
        study_id=study.id if study is not None else None,
        archive_name=archive_codec.safe_base_name(base, fallback=kind),
        staging_path=str(staging_dir),
        state="uploaded",
        expires_at=_utcnow() + _max_age(),
    )
    db.session.add(session)
    db.session.commit()
    logger.info("Staged %s upload %s", kind, session.archive_name, extra=_log_extra(session))
    return session


def _discard_pending_studies(owner) -> None:
    pending = db.session.execute(
        select(StagingSession).where(
            StagingSession.owner_id == owner.id,
            StagingSession.kind == "study",
            StagingSession.state.in_(PENDING_STATES),
        )
    ).scalars().all()
    for session in pending:
        discard(session)


# ── Reading staged content ───────────────────────────────────────────────────


def load_study(session: StagingSession) -> tuple[dict, Path]:
    """Return (document data, staged asset dir) of a staged study."""
    staging_dir = Path(session.staging_path)
    extract_dir = staging_dir / EXTRACT_DIR_NAME
    if not extract_dir.is_dir():
        raise StagingExpiredError(session.token)
    documents = sorted(extract_dir.glob(f"*{archive_codec.STUDY_DOCUMENT_SUFFIX}"))
    if len(documents) != 1:
        raise StagingExpiredError(session.token)
    data = archive_codec.read_document(documents[0])
    return data, archive_codec.find_asset_dir(extract_dir, data, documents[0].stem)


def load_component(session: StagingSession) -> dict:
    upload_path = Path(session.staging_path) / UPLOAD_FILE_NAME
    if not upload_path.is_file():
        raise StagingExpiredError(session.token)
    return archive_codec.read_document(upload_path)


# ── Lookup & transitions ─────────────────────────────────────────────────────


def _swap_state(session: StagingSession, from_states, new_state: str, **values) -> bool:
    """Move ``session`` to ``new_state`` only if its row is still in ``from_states``.

    The check and the write are one UPDATE, so of several workers racing on
    the same row exactly one sees ``True``. Commits and reloads ``session``.

    Raises:
        ValueError: an edge from ``from_states`` is not in the state machine.
    """
    for old_state in from_states:
        if not validate_staging_transition(old_state, new_state):
            raise ValueError(f"Illegal staging transition {old_state} -> {new_state}")
    values["state"] = new_state
    if new_state in TERMINAL_STATES:
        values.setdefault("finished_at", _utcnow())
    result = db.session.execute(
        update(StagingSession)
        .where(StagingSession.id == session.id, StagingSession.state.in_(from_states))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount == 1
    db.session.commit()
    db.session.refresh(session)
    return changed


def get_active(token: str, owner, kind: str, study=None) -> StagingSession:
    """Return the owner's live session for ``token``.

    Raises:
        StagingExpiredError: unknown, foreign, claimed, terminal or expired
            token, or a token staged for another kind or target study.
    """
    session = db.session.execute(
        select(StagingSession)
        .where(StagingSession.token == token)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if (
        session is None
        or session.owner_id != owner.id
        or session.kind != kind
        or (study is not None and session.study_id != study.id)
        or session.state not in PENDING_STATES
    ):
        raise StagingExpiredError(token)
    if session.is_expired():
        discard(session)
        raise StagingExpiredError(token)
    return session


@contextmanager
def claim(token: str, owner, kind: str, study=None):
    """Claim the token's reported session for one confirm and yield it.

    The session moves ``reported → confirming`` in the database before
    anything else happens; a second confirm, in this process or another
    worker, finds it already claimed. The caller must ``finish`` it.

    Raises:
        StagingExpiredError: as ``get_active``, the session was never
            reported, or another confirm claimed it first.
    """
    session = get_active(token, owner, kind, study)
    if session.state != "reported" or not _swap_state(session, {"reported"}, "confirming"):
        raise StagingExpiredError(token)
    logger.info("Claimed %s import %s", session.kind, session.archive_name,
                extra=_log_extra(session))
    yield session


def mark_reported(session: StagingSession, report: dict) -> StagingSession:
    """Store the conflict report and move ``uploaded → reported``.

    Raises:
        StagingExpiredError: the session was discarded meanwhile.
    """
    if not _swap_state(session, {"uploaded"}, "reported", report=report):
        raise StagingExpiredError(session.token)
    logger.info("Reported %s import %s", session.kind, session.archive_name,
                extra=_log_extra(session))
    return session


def finish(session: StagingSession, state: str) -> None:
    """End a claimed session in a terminal state, commit and free its directory.

    If the sweep reclaimed the claim meanwhile the row is left as the sweep
    set it.
    """
    try:
        if _swap_state(session, {"confirming"}, state):
            logger.info("Staging session %s", state, extra=_log_extra(session))
        else:
            logger.warning("Confirm finished after its claim was reclaimed (%s)",
                           session.state, extra=_log_extra(session))
    finally:
        discard_tree(Path(session.staging_path))


def discard(session: StagingSession, now: datetime | None = None) -> bool:
    """Discard a pending session and remove its staged tree. Idempotent.

    A session claimed by a confirm in progress is left alone. Returns True
    when this call did the discarding.
    """
    discarded = _swap_state(session, PENDING_STATES, "discarded", finished_at=now or _utcnow())
    if discarded:
        logger.info("Staging session discarded", extra=_log_extra(session))
    if discarded or session.is_terminal:
        discard_tree(Path(session.staging_path))
    return discarded


def discard_token(token: str, owner, kind: str, study=None) -> bool:
    """Discard the owner's pending ``kind`` session for ``token``.

    Returns True when something was discarded. Unknown, foreign, claimed and
    already finished tokens, and tokens of another kind or target study, are
    a silent no-op.
    """
    session = db.session.execute(
        select(StagingSession).where(StagingSession.token == token)
    ).scalar_one_or_none()
    if (
        session is None
        or session.owner_id != owner.id
        or session.kind != kind
        or (study is not None and session.study_id != study.id)
        or session.state not in PENDING_STATES
    ):
        return False
    return discard(session)


# ── Sweep ────────────────────────────────────────────────────────────────────


def sweep_expired(now: datetime | None = None) -> dict:
    """Reclaim abandoned staging state.

    - pending sessions past ``expires_at`` are discarded;
    - claimed sessions still unfinished one age bound past ``expires_at``
      (their worker died mid-confirm) are discarded;
    - terminal session rows older than the age bound are deleted;
    - directories under the staging root with no live session are removed.

    Every state change goes through the same conditional UPDATE as a
    confirm, so a session a confirm has just claimed is skipped.

    Returns:
        Counts of each kind of reclaimed item.
    """
    now = now or _utcnow()
    cutoff = now - _max_age()
    result = {"expired": 0, "stale_claims": 0, "purged_rows": 0, "orphan_dirs": 0}

    pending = db.session.execute(
        select(StagingSession).where(StagingSession.state.in_(PENDING_STATES))
    ).scalars().all()
    for session in pending:
        if session.is_expired(now) and discard(session, now):
            result["expired"] += 1

    claimed = db.session.execute(
        select(StagingSession).where(StagingSession.state == "confirming")
    ).scalars().all()
    for session in claimed:
        if session.is_expired(cutoff) and _swap_state(session, {"confirming"}, "discarded",
                                                      finished_at=now):
            discard_tree(Path(session.staging_path))
            logger.warning("Reclaimed abandoned confirm of %s", session.archive_name,
                           extra=_log_extra(session))
            result["stale_claims"] += 1

    finished = db.session.execute(
        select(StagingSession).where(StagingSession.state.in_(TERMINAL_STATES))
    ).scalars().all()
    for session in finished:
        finished_at = session.finished_at or session.created_at
        if finished_at.tzinfo is None:
            finished_at = finished_at.replace(tzinfo=timezone.utc)
        if finished_at < cutoff:
            db.session.delete(session)
            result["purged_rows"] += 1
    db.session.commit()

    live_paths = {
        Path(p) for p in db.session.execute(
            select(StagingSession.staging_path).where(
                StagingSession.state.notin_(TERMINAL_STATES)
            )
        ).scalars()
    }
    # Uploads still being written have a directory but no row yet
    for entry in _staging_root().iterdir():
        if entry.is_dir() and entry not in live_paths and entry.stat().st_mtime < cutoff.timestamp():
            discard_tree(entry)
            result["orphan_dirs"] += 1

    if any(result.values()):
        logger.info("Staging sweep reclaimed %s", result, extra={"event_type": "staging.sweep"})
    return result
