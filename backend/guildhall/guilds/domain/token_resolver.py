"""Resolve approval requests to the pending membership they target.

The public approve endpoint accepts an optional token. Instead of treating the
empty string as a sentinel, requests are split into two explicit variants:

- ``TokenApproval``: an invitee presents the token issued with their invite.
- ``RequestApproval``: no token; approve a self-initiated join request, either
  the caller's own (``user_id=None``) or a named requester's.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union
from uuid import UUID

from guildhall.guilds.domain import models
from guildhall.guilds.domain.exceptions import InvalidTokenError, NotFoundError, ValidationError
from guildhall.guilds.domain.repo import GuildRepository


@dataclass(frozen=True, slots=True)
class TokenApproval:
	token: str

	def __post_init__(self) -> None:
		if not self.token or not self.token.strip():
			raise ValidationError("empty_token_reserved")


@dataclass(frozen=True, slots=True)
class RequestApproval:
	user_id: Optional[str] = None

	def subject(self, requester_id: str) -> str:
		return self.user_id or requester_id


ApprovalRequest = Union[TokenApproval, RequestApproval]


def from_payload(token: str | None, user_id: str | None = None) -> ApprovalRequest:
	"""Build the approval variant from the loose HTTP body."""
	if token:
		if user_id:
			raise ValidationError("token_and_user_id_exclusive")
		return TokenApproval(token)
	cleaned = user_id.strip() if user_id else None
	return RequestApproval(cleaned or None)


async def resolve(
	repository: GuildRepository,
	*,
	guild_id: UUID,
	requester_id: str,
	request: ApprovalRequest,
) -> models.Membership:
	"""Return the unique pending row addressed by ``request``."""
	if isinstance(request, TokenApproval):
		row = await repository.find_membership_by_token(guild_id, request.token)
		if (
			row is None
			or not row.is_pending
			or row.pending_kind is not models.PendingKind.INVITED
			or row.user_id != requester_id
		):
			raise InvalidTokenError()
		return row

	row = await repository.find_membership(guild_id, request.subject(requester_id))
	if row is None or not row.is_pending or row.pending_kind is not models.PendingKind.REQUESTED:
		raise NotFoundError("join_request_not_found")
	return row
