from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from guildhall.guilds.domain import models, state_machine
from guildhall.guilds.domain.exceptions import (
	AlreadyMemberError,
	ForbiddenError,
	InvalidTokenError,
	NotFoundError,
	OwnerCannotLeaveError,
	ValidationError,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(minutes=5)


def _guild(*, owner_id: str = "owner", allow_self_join: bool = True) -> models.Guild:
	return models.Guild(
		id=uuid4(),
		name="Star Forge",
		slug="star-forge",
		owner_id=owner_id,
		allow_self_join=allow_self_join,
		created_at=NOW,
		updated_at=NOW,
	)


def _member(
	guild: models.Guild,
	user_id: str,
	*,
	role: models.GuildRole = models.GuildRole.MEMBER,
	status: models.MembershipStatus = models.MembershipStatus.ACTIVE,
	pending_kind: models.PendingKind | None = None,
	token: str | None = None,
	version: int = 1,
) -> models.Membership:
	return models.Membership(
		guild_id=guild.id,
		user_id=user_id,
		role=role,
		status=status,
		pending_kind=pending_kind,
		invite_token=token,
		joined_at=NOW if status is models.MembershipStatus.ACTIVE else None,
		created_at=NOW,
		updated_at=NOW,
		version=version,
	)


def _owner(guild: models.Guild) -> models.Membership:
	return _member(guild, guild.owner_id, role=models.GuildRole.OWNER)


def _invited(guild: models.Guild, user_id: str = "bob", token: str = "tok-1") -> models.Membership:
	return _member(
		guild,
		user_id,
		status=models.MembershipStatus.PENDING,
		pending_kind=models.PendingKind.INVITED,
		token=token,
	)


def test_found_creates_active_owner_row():
	guild = _guild()
	row = state_machine.found(guild, now=NOW)
	assert row.user_id == "owner"
	assert row.role is models.GuildRole.OWNER
	assert row.is_active
	assert row.joined_at == NOW
	assert row.version == 1


def test_invite_creates_pending_invited_row():
	guild = _guild()
	row = state_machine.invite(
		guild=guild,
		inviter=_owner(guild),
		current=None,
		invitee_id="bob",
		role=models.GuildRole.MEMBER,
		token="tok-1",
		now=NOW,
	)
	assert row.status is models.MembershipStatus.PENDING
	assert row.pending_kind is models.PendingKind.INVITED
	assert row.invited_by == "owner"
	assert row.invite_token == "tok-1"
	assert row.joined_at is None
	assert row.version == 1


def test_invite_reuses_removed_row_and_bumps_version():
	guild = _guild()
	removed = _member(guild, "bob", status=models.MembershipStatus.REMOVED, version=4)
	row = state_machine.invite(
		guild=guild,
		inviter=_owner(guild),
		current=removed,
		invitee_id="bob",
		role=models.GuildRole.MEMBER,
		token="tok-2",
		now=LATER,
	)
	assert row.version == 5
	assert row.created_at == removed.created_at
	assert row.updated_at == LATER


@pytest.mark.parametrize(
	"current_status, pending_kind, detail",
	[
		(models.MembershipStatus.ACTIVE, None, "already_member"),
		(models.MembershipStatus.PENDING, models.PendingKind.INVITED, "membership_pending"),
		(models.MembershipStatus.PENDING, models.PendingKind.REQUESTED, "membership_pending"),
	],
)
def test_invite_rejects_occupied_slot(current_status, pending_kind, detail):
	guild = _guild()
	current = _member(guild, "bob", status=current_status, pending_kind=pending_kind)
	with pytest.raises(AlreadyMemberError) as exc:
		state_machine.invite(
			guild=guild,
			inviter=_owner(guild),
			current=current,
			invitee_id="bob",
			role=models.GuildRole.MEMBER,
			token="tok",
			now=NOW,
		)
	assert exc.value.detail == detail


def test_invite_requires_privileged_inviter():
	guild = _guild()
	with pytest.raises(ForbiddenError) as exc:
		state_machine.invite(
			guild=guild,
			inviter=_member(guild, "carol"),
			current=None,
			invitee_id="bob",
			role=models.GuildRole.MEMBER,
			token="tok",
			now=NOW,
		)
	assert exc.value.detail == "admin_role_required"


def test_invite_never_grants_owner():
	guild = _guild()
	with pytest.raises(ForbiddenError) as exc:
		state_machine.invite(
			guild=guild,
			inviter=_owner(guild),
			current=None,
			invitee_id="bob",
			role=models.GuildRole.OWNER,
			token="tok",
			now=NOW,
		)
	assert exc.value.detail == "owner_role_not_assignable"


def test_admin_cannot_invite_admin():
	guild = _guild()
	admin = _member(guild, "alice", role=models.GuildRole.ADMIN)
	with pytest.raises(ForbiddenError) as exc:
		state_machine.invite(
			guild=guild,
			inviter=admin,
			current=None,
			invitee_id="bob",
			role=models.GuildRole.ADMIN,
			token="tok",
			now=NOW,
		)
	assert exc.value.detail == "owner_required_for_admin"


def test_request_join_respects_self_join_flag():
	guild = _guild(allow_self_join=False)
	with pytest.raises(ForbiddenError) as exc:
		state_machine.request_join(guild=guild, current=None, user_id="bob", now=NOW)
	assert exc.value.detail == "self_join_disabled"


def test_request_join_creates_pending_request():
	guild = _guild()
	row = state_machine.request_join(guild=guild, current=None, user_id="bob", now=NOW)
	assert row.pending_kind is models.PendingKind.REQUESTED
	assert row.invite_token is None
	assert row.role is models.GuildRole.MEMBER


def test_approve_invite_activates_and_consumes_token():
	guild = _guild()
	row = state_machine.approve_invite(_invited(guild), approver_id="bob", token="tok-1", now=LATER)
	assert row.is_active
	assert row.invite_token is None
	assert row.pending_kind is None
	assert row.joined_at == LATER
	assert row.version == 2


@pytest.mark.parametrize(
	"approver, token",
	[("bob", "wrong"), ("bob", ""), ("carol", "tok-1")],
)
def test_approve_invite_rejects_mismatch(approver, token):
	guild = _guild()
	with pytest.raises(InvalidTokenError):
		state_machine.approve_invite(_invited(guild), approver_id=approver, token=token, now=LATER)


def test_approve_invite_rejects_active_row():
	guild = _guild()
	with pytest.raises(InvalidTokenError):
		state_machine.approve_invite(_member(guild, "bob"), approver_id="bob", token="tok-1", now=LATER)


def test_approve_request_needs_privileged_approver():
	guild = _guild()
	requested = _member(
		guild,
		"bob",
		status=models.MembershipStatus.PENDING,
		pending_kind=models.PendingKind.REQUESTED,
	)
	with pytest.raises(ForbiddenError):
		state_machine.approve_request(requested, approver=requested, now=LATER)
	row = state_machine.approve_request(requested, approver=_owner(guild), now=LATER)
	assert row.is_active


def test_approve_request_rejects_invites():
	guild = _guild()
	with pytest.raises(NotFoundError) as exc:
		state_machine.approve_request(_invited(guild), approver=_owner(guild), now=LATER)
	assert exc.value.detail == "join_request_not_found"


def test_leave_marks_removed_and_clears_token():
	guild = _guild()
	row = state_machine.leave(_invited(guild), now=LATER)
	assert row.is_removed
	assert row.invite_token is None
	assert row.pending_kind is None


def test_leave_twice_is_not_found():
	guild = _guild()
	removed = state_machine.leave(_member(guild, "bob"), now=LATER)
	with pytest.raises(NotFoundError):
		state_machine.leave(removed, now=LATER)
	with pytest.raises(NotFoundError):
		state_machine.leave(None, now=LATER)


def test_owner_cannot_leave():
	guild = _guild()
	with pytest.raises(OwnerCannotLeaveError):
		state_machine.leave(_owner(guild), now=LATER)


def test_assign_role_same_role_returns_target():
	guild = _guild()
	target = _member(guild, "bob")
	assert state_machine.assign_role(
		actor=_owner(guild),
		target=target,
		new_role=models.GuildRole.MEMBER,
		now=LATER,
	) is target


def test_assign_role_promotes_member():
	guild = _guild()
	row = state_machine.assign_role(
		actor=_owner(guild),
		target=_member(guild, "bob"),
		new_role=models.GuildRole.ADMIN,
		now=LATER,
	)
	assert row.role is models.GuildRole.ADMIN
	assert row.version == 2


@pytest.mark.parametrize(
	"actor_role, target_role, new_role, detail",
	[
		(models.GuildRole.OWNER, models.GuildRole.MEMBER, models.GuildRole.OWNER, "owner_role_not_assignable"),
		(models.GuildRole.ADMIN, models.GuildRole.MEMBER, models.GuildRole.ADMIN, "owner_required_for_admin"),
		(models.GuildRole.ADMIN, models.GuildRole.ADMIN, models.GuildRole.MEMBER, "owner_required_for_admin"),
		(models.GuildRole.MEMBER, models.GuildRole.MEMBER, models.GuildRole.ADMIN, "admin_role_required"),
	],
)
def test_assign_role_guards(actor_role, target_role, new_role, detail):
	guild = _guild()
	actor = _member(guild, "alice", role=actor_role)
	target = _member(guild, "bob", role=target_role)
	with pytest.raises(ForbiddenError) as exc:
		state_machine.assign_role(actor=actor, target=target, new_role=new_role, now=LATER)
	assert exc.value.detail == detail


def test_assign_role_cannot_demote_owner():
	guild = _guild()
	admin = _member(guild, "alice", role=models.GuildRole.ADMIN)
	with pytest.raises(ForbiddenError) as exc:
		state_machine.assign_role(actor=admin, target=_owner(guild), new_role=models.GuildRole.MEMBER, now=LATER)
	assert exc.value.detail == "owner_role_not_revocable"


def test_assign_role_non_member_actor_is_not_found():
	guild = _guild()
	with pytest.raises(NotFoundError):
		state_machine.assign_role(actor=None, target=_member(guild, "bob"), new_role=models.GuildRole.ADMIN, now=LATER)


def test_transfer_ownership_swaps_roles():
	guild = _guild()
	demoted, promoted = state_machine.transfer_ownership(
		guild=guild,
		owner=_owner(guild),
		target=_member(guild, "bob"),
		actor_id="owner",
		now=LATER,
	)
	assert demoted.role is models.GuildRole.ADMIN
	assert promoted.role is models.GuildRole.OWNER
	assert demoted.version == 2 and promoted.version == 2


def test_transfer_ownership_requires_active_target():
	guild = _guild()
	pending = _invited(guild)
	with pytest.raises(NotFoundError):
		state_machine.transfer_ownership(guild=guild, owner=_owner(guild), target=pending, actor_id="owner", now=LATER)


def test_transfer_ownership_to_self_rejected():
	guild = _guild()
	owner = _owner(guild)
	with pytest.raises(ValidationError):
		state_machine.transfer_ownership(guild=guild, owner=owner, target=owner, actor_id="owner", now=LATER)
