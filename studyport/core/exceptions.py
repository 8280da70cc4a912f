"""
Import/export exception hierarchy.

Services raise these types; the import/export blueprint registers one
handler per type and maps them to consistent HTTP status codes. Filesystem
failures are not wrapped: ``OSError`` / ``PermissionError`` propagate as-is.

Usage:
    from studyport.core.exceptions import BadRequestError, ForbiddenError

    raise BadRequestError("uuid is required", details={"field": "uuid"})
    raise ForbiddenError(resource="Study", resource_id=study.id)
"""


class BadRequestError(Exception):
    """Raised when an upload or request body is malformed.

    Maps to HTTP 400. Nothing persisted changes.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class CorruptArchiveError(BadRequestError):
    """Raised when an archive container or its properties entry cannot be read.

    Any staging directory created for the upload is removed before this
    propagates.
    """


class ForbiddenError(Exception):
    """Raised when the acting identity lacks rights over the target study.

    Maps to HTTP 403.

    Args:
        resource: Human-readable entity name (e.g. "Study").
        resource_id: The id or uuid that was checked. Included in logs.
        user: Email of the acting identity. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        user: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.user = user
        msg = f"Not allowed to access {resource}"
        if resource_id is not None:
            msg += f" {resource_id}"
        if user is not None:
            msg += f" (user={user})"
        super().__init__(msg)


class NotFoundError(Exception):
    """Raised when a requested study or component does not exist.

    Args:
        resource: Human-readable model name (e.g. "Study", "Component").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class StagingExpiredError(Exception):
    """Raised when a confirm or discard targets a staging session that is gone.

    Covers swept, consumed, expired and foreign tokens alike. A token owned
    by somebody else is reported the same way as an unknown one so that the
    response does not reveal that it exists.

    Maps to HTTP 410; the caller must restart the upload.
    """

    def __init__(self, token: str | None = None) -> None:
        self.token = token
        super().__init__("Staged import is no longer available; upload the archive again")


class PersistenceError(Exception):
    """Raised when the record write fails during a confirm.

    Asset changes are applied before records, so by the time this is raised
    the live directory may already hold the staged tree. ``details`` tells the
    caller whether the engine managed to put the previous tree back.

    Maps to HTTP 500.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
