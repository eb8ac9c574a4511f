"""Membership lifecycle transitions.

Every function takes the records loaded for one request, checks the guards for
its event and returns the next version of the membership row. Nothing here
performs I/O; persistence and conditional writes belong to the service.

    NotMember/Removed --invite--> Pending(invited) --approve(token)--> Active
    NotMember/Removed --join----> Pending(requested) --approve(admin)--> Active
    Pending/Active --leave--> Removed
    Active --assign_role--> Active
"""

from __future__ import annotations

import hmac
from datetime import datetime

from guildhall.guilds.domain import models, policies
from guildhall.guilds.domain.exceptions import (
	AlreadyMemberError,
	ForbiddenError,
	InvalidTokenError,
	NotFoundError,
	OwnerCannotLeaveError,
	ValidationError,
)

Role = models.GuildRole
Status = models.MembershipStatus
Kind = models.PendingKind


def _next_version(current: models.Membership | None) -> int:
	return current.version + 1 if current is not None else 1


def _ensure_vacant(current: models.Membership | None) -> None:
	if current is None or current.is_removed:
		return
	if current.is_active:
		raise AlreadyMemberError("already_member")
	raise AlreadyMemberError("membership_pending")


def found(guild: models.Guild, *, now: datetime) -> models.Membership:
	"""Owner membership created together with the guild."""
	return models.Membership(
		guild_id=guild.id,
		user_id=guild.owner_id,
		role=Role.OWNER,
		status=Status.ACTIVE,
		joined_at=now,
		created_at=now,
		updated_at=now,
	)


def invite(
	*,
	guild: models.Guild,
	inviter: models.Membership | None,
	current: models.Membership | None,
	invitee_id: str,
	role: models.GuildRole,
	token: str,
	now: datetime,
) -> models.Membership:
	actor = policies.assert_can_admin(inviter)
	policies.ensure_grantable(actor, role)
	_ensure_vacant(current)
	if not token:
		raise ValidationError("invite_token_required")
	return models.Membership(
		guild_id=guild.id,
		user_id=invitee_id,
		role=role,
		status=Status.PENDING,
		pending_kind=Kind.INVITED,
		invited_by=actor.user_id,
		invite_token=token,
		joined_at=None,
		created_at=current.created_at if current else now,
		updated_at=now,
		version=_next_version(current),
	)


def request_join(
	*,
	guild: models.Guild,
	current: models.Membership | None,
	user_id: str,
	now: datetime,
) -> models.Membership:
	_ensure_vacant(current)
	if not guild.allow_self_join:
		raise ForbiddenError("self_join_disabled")
	return models.Membership(
		guild_id=guild.id,
		user_id=user_id,
		role=Role.MEMBER,
		status=Status.PENDING,
		pending_kind=Kind.REQUESTED,
		created_at=current.created_at if current else now,
		updated_at=now,
		version=_next_version(current),
	)


def _activate(row: models.Membership, *, now: datetime) -> models.Membership:
	return row.model_copy(
		update={
			"status": Status.ACTIVE,
			"pending_kind": None,
			"invite_token": None,
			"joined_at": now,
			"updated_at": now,
			"version": row.version + 1,
		}
	)


def approve_invite(
	row: models.Membership,
	*,
	approver_id: str,
	token: str,
	now: datetime,
) -> models.Membership:
	"""The invitee consumes their single-use token."""
	if not row.is_pending or row.pending_kind is not Kind.INVITED or not row.invite_token:
		raise InvalidTokenError()
	if not token or not hmac.compare_digest(row.invite_token, token):
		raise InvalidTokenError()
	if row.user_id != approver_id:
		raise InvalidTokenError()
	return _activate(row, now=now)


def approve_request(
	row: models.Membership,
	*,
	approver: models.Membership | None,
	now: datetime,
) -> models.Membership:
	"""An owner or admin accepts a self-initiated join request."""
	if not row.is_pending or row.pending_kind is not Kind.REQUESTED:
		raise NotFoundError("join_request_not_found")
	policies.assert_can_admin(approver)
	return _activate(row, now=now)


def leave(current: models.Membership | None, *, now: datetime) -> models.Membership:
	if current is None or current.is_removed:
		raise NotFoundError("membership_not_found")
	if current.role is Role.OWNER:
		raise OwnerCannotLeaveError()
	return current.model_copy(
		update={
			"status": Status.REMOVED,
			"pending_kind": None,
			"invite_token": None,
			"updated_at": now,
			"version": current.version + 1,
		}
	)


def assign_role(
	*,
	actor: models.Membership | None,
	target: models.Membership | None,
	new_role: models.GuildRole,
	now: datetime,
) -> models.Membership:
	"""Change an active member's role.

	Returns ``target`` itself when the role is already ``new_role`` so callers
	can skip the write.
	"""
	if actor is None or actor.is_removed:
		raise NotFoundError("membership_not_found")
	actor = policies.assert_can_admin(actor)
	if target is None or not target.is_active:
		raise NotFoundError("member_not_found")
	policies.ensure_role_change(actor, target, new_role)
	if target.role is new_role:
		return target
	return target.model_copy(
		update={
			"role": new_role,
			"updated_at": now,
			"version": target.version + 1,
		}
	)


def transfer_ownership(
	*,
	guild: models.Guild,
	owner: models.Membership | None,
	target: models.Membership | None,
	actor_id: str,
	now: datetime,
) -> tuple[models.Membership, models.Membership]:
	"""Hand the owner role to another active member; the previous owner becomes admin."""
	policies.assert_is_owner(guild, owner, actor_id)
	assert owner is not None
	if target is None or not target.is_active:
		raise NotFoundError("member_not_found")
	if target.user_id == owner.user_id:
		raise ValidationError("already_owner")
	demoted = owner.model_copy(
		update={"role": Role.ADMIN, "updated_at": now, "version": owner.version + 1}
	)
	promoted = target.model_copy(
		update={"role": Role.OWNER, "updated_at": now, "version": target.version + 1}
	)
	return demoted, promoted
