"""
Study domain models.

Models:
    - User:       acting identity; members of a study may import into and export it
    - Study:      study record; owns an ordered component list and one asset directory
    - Component:  single step of a study, ordered by ``position`` (1-based, contiguous)

Architecture:
    Study ──N:M──▶ User       (via study_members)
    Study ──1:N──▶ Component  (ordering_list on position, delete-orphan)

Identity:
    ``uuid`` is the durable cross-system identity and survives every
    export/import round trip. ``id`` is local and assigned on insert.
    Study uuids are globally unique; component uuids are unique per study.
"""

from datetime import datetime, timezone

from sqlalchemy.ext.orderinglist import ordering_list

from studyport.models import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


study_members = db.Table(
    "study_members",
    db.Column("study_id", db.Integer, db.ForeignKey("studies.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class User(db.Model):
    """Acting identity resolved by the auth layer."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {"id": self.id, "email": self.email, "name": self.name}

    def __repr__(self):
        return f"<User {self.email}>"


class Study(db.Model):
    """A study record plus the name of its live asset directory."""

    __tablename__ = "studies"

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    comments = db.Column(db.Text, nullable=True)
    properties = db.Column(
        db.JSON, nullable=True,
        comment="Free-form properties document; replaced wholesale on import",
    )
    dir_name = db.Column(
        db.String(255), unique=True, nullable=False,
        comment="Asset directory name beneath ASSETS_ROOT",
    )
    allowed_worker_types = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    components = db.relationship(
        "Component",
        back_populates="study",
        order_by="Component.position",
        collection_class=ordering_list("position", count_from=1),
        cascade="all, delete-orphan",
    )
    members = db.relationship("User", secondary=study_members, lazy="selectin")

    def component_by_uuid(self, uuid):
        for component in self.components:
            if component.uuid == uuid:
                return component
        return None

    def has_member(self, user) -> bool:
        return user is not None and any(m.id == user.id for m in self.members)

    def to_dict(self, include_components=False):
        result = {
            "id": self.id,
            "uuid": self.uuid,
            "title": self.title,
            "description": self.description,
            "comments": self.comments,
            "dirName": self.dir_name,
            "allowedWorkerTypes": sorted(self.allowed_worker_types or []),
            "componentCount": len(self.components),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_components:
            result["components"] = [c.to_dict() for c in self.components]
        return result

    def __repr__(self):
        return f"<Study {self.id} {self.uuid}>"


class Component(db.Model):
    """One ordered step of a study."""

    __tablename__ = "components"
    __table_args__ = (
        db.UniqueConstraint("study_id", "uuid", name="uq_components_study_uuid"),
    )

    id = db.Column(db.Integer, primary_key=True)
    study_id = db.Column(
        db.Integer, db.ForeignKey("studies.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    uuid = db.Column(db.String(36), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    comments = db.Column(db.Text, nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    reloadable = db.Column(db.Boolean, nullable=False, default=False)
    html_file_path = db.Column(
        db.String(500), nullable=True,
        comment="Entry file path relative to the study's asset directory",
    )
    properties = db.Column(db.JSON, nullable=True)
    position = db.Column(db.Integer, nullable=False, comment="1-based ordinal within the study")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    study = db.relationship("Study", back_populates="components")

    def to_dict(self):
        return {
            "id": self.id,
            "uuid": self.uuid,
            "studyId": self.study_id,
            "title": self.title,
            "comments": self.comments,
            "active": self.active,
            "reloadable": self.reloadable,
            "htmlFilePath": self.html_file_path,
            "position": self.position,
        }

    def __repr__(self):
        return f"<Component {self.id} {self.uuid} pos={self.position}>"
