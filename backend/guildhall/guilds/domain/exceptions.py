"""Custom exceptions for guild membership services."""

from __future__ import annotations

from fastapi import status

if hasattr(status, "HTTP_422_UNPROCESSABLE_CONTENT"):
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_CONTENT
else:  # pragma: no cover - fallback for older Starlette builds
	_HTTP_422 = status.HTTP_422_UNPROCESSABLE_ENTITY


class GuildError(Exception):
	"""Base class for guild related errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "guild_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class ValidationError(GuildError):
	"""Raised for malformed input before any repository access."""

	status_code = _HTTP_422
	detail = "validation_error"


class NotFoundError(GuildError):
	"""Thrown when a guild or membership is missing."""

	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"


class ForbiddenError(GuildError):
	"""Raised when authorization fails."""

	status_code = status.HTTP_403_FORBIDDEN
	detail = "forbidden"


class ConflictError(GuildError):
	"""Base class for 409 responses."""

	status_code = status.HTTP_409_CONFLICT
	detail = "conflict"


class AlreadyMemberError(ConflictError):
	"""Raised when the subject already holds a pending or active membership."""

	detail = "already_member"


class SlugConflictError(ConflictError):
	detail = "slug_conflict"


class OwnerCannotLeaveError(ConflictError):
	"""The owner must transfer ownership before leaving."""

	detail = "owner_cannot_leave"


class StateConflictError(ConflictError):
	"""Raised when a concurrent write won the race for the same record."""

	detail = "state_conflict"


class IdempotencyConflict(ConflictError):
	"""Raised when an idempotency key is reused with a mismatched payload."""

	detail = "idempotency_conflict"


class InvalidTokenError(GuildError):
	"""Invite token missing, wrong, already consumed, or issued to someone else."""

	status_code = status.HTTP_400_BAD_REQUEST
	detail = "invalid_token"


class RepositoryUnavailableError(GuildError):
	"""Transient infrastructure failure; the only error callers may retry."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "repository_unavailable"


class VersionConflict(Exception):
	"""Internal signal from repositories that a conditional write lost its race.

	Never surfaced to callers directly; the service maps it to the error that
	matches the operation being attempted.
	"""

	def __init__(self, entity: str, key: str) -> None:
		super().__init__(f"{entity}:{key}")
		self.entity = entity
		self.key = key
