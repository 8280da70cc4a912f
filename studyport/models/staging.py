"""
Staging session model and its state machine.

A StagingSession maps a server-generated token to an extracted upload that
waits for the owner's confirmation.

Lifecycle states:
    uploaded → reported → confirming → confirmed | discarded
    uploaded | reported → discarded

    confirming is held by exactly one confirm call; it is entered with a
    conditional UPDATE so concurrent workers cannot both claim a session.
    confirmed and discarded are terminal; entering either frees the staging
    directory. There is no way back from reported.
"""

from datetime import datetime, timezone

from studyport.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STAGING_KINDS = {"study", "component"}

PENDING_STATES = {"uploaded", "reported"}

TERMINAL_STATES = {"confirmed", "discarded"}

STAGING_TRANSITIONS = {
    "uploaded":  ["reported", "discarded"],
    "reported":  ["confirming", "discarded"],
    "confirming": ["confirmed", "discarded"],
    "confirmed": [],
    "discarded": [],
}


def validate_staging_transition(old_state, new_state):
    """Return True if a StagingSession state transition is valid."""
    return new_state in STAGING_TRANSITIONS.get(old_state, [])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StagingSession(db.Model):
    """Server-side record of one staged upload."""

    __tablename__ = "staging_sessions"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False, comment="study | component")
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    study_id = db.Column(
        db.Integer, db.ForeignKey("studies.id", ondelete="CASCADE"),
        nullable=True, comment="Target study of a component import",
    )
    archive_name = db.Column(db.String(255), nullable=False)
    staging_path = db.Column(db.String(1024), nullable=False)
    state = db.Column(
        db.String(20), nullable=False, default="uploaded",
        comment="uploaded | reported | confirming | confirmed | discarded",
    )
    report = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    owner = db.relationship("User")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_expired(self, now=None) -> bool:
        now = now or _utcnow()
        expires_at = self.expires_at
        # SQLite drops tzinfo on the way back out
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    def __repr__(self):
        return f"<StagingSession {self.kind} {self.state}>"
