"""Authorization and validation policies for guild operations.

Guards are plain predicates over loaded records. They raise domain errors and
never touch the repository, so every failure happens before any write.
"""

from __future__ import annotations

from guildhall.guilds.domain import models
from guildhall.guilds.domain.exceptions import (
	ForbiddenError,
	NotFoundError,
	ValidationError,
)

NAME_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 1000

ROLE_HIERARCHY = {
	models.GuildRole.OWNER: 3,
	models.GuildRole.ADMIN: 2,
	models.GuildRole.MEMBER: 1,
}


def parse_role(value: str | models.GuildRole | None, *, default: models.GuildRole | None = None) -> models.GuildRole:
	"""Validate a role string against the closed role set."""
	if value is None:
		if default is None:
			raise ValidationError("role_required")
		return default
	if isinstance(value, models.GuildRole):
		return value
	try:
		return models.GuildRole(str(value).strip().lower())
	except ValueError as exc:
		raise ValidationError("invalid_role") from exc


def ensure_name(name: str | None) -> str:
	cleaned = (name or "").strip()
	if not cleaned:
		raise ValidationError("name_required")
	if len(cleaned) > NAME_MAX_LENGTH:
		raise ValidationError("name_too_long")
	return cleaned


def ensure_description(description: str | None) -> str:
	if description is None:
		return ""
	if len(description) > DESCRIPTION_MAX_LENGTH:
		raise ValidationError("description_too_long")
	return description


def ensure_user_id(user_id: str | None) -> str:
	cleaned = (user_id or "").strip()
	if not cleaned:
		raise ValidationError("user_id_required")
	return cleaned


def require_guild(guild: models.Guild | None) -> models.Guild:
	if guild is None:
		raise NotFoundError("guild_not_found")
	return guild


def is_owner(guild: models.Guild, user_id: str) -> bool:
	return guild.owner_id == user_id


def assert_is_owner(guild: models.Guild, membership: models.Membership | None, user_id: str) -> None:
	if not is_owner(guild, user_id):
		raise ForbiddenError("owner_role_required")
	if membership is None or not membership.is_active or membership.role is not models.GuildRole.OWNER:
		raise ForbiddenError("owner_role_required")


def assert_can_admin(membership: models.Membership | None) -> models.Membership:
	"""Actor must be an active owner or admin."""
	if membership is None or not membership.is_privileged:
		raise ForbiddenError("admin_role_required")
	return membership


def can_view_pending(membership: models.Membership | None) -> bool:
	return membership is not None and membership.is_privileged


def ensure_grantable(actor: models.Membership, role: models.GuildRole) -> None:
	"""Owner is never granted directly; only the owner hands out admin."""
	if role is models.GuildRole.OWNER:
		raise ForbiddenError("owner_role_not_assignable")
	if role is models.GuildRole.ADMIN and actor.role is not models.GuildRole.OWNER:
		raise ForbiddenError("owner_required_for_admin")


def ensure_role_change(
	actor: models.Membership,
	target: models.Membership,
	new_role: models.GuildRole,
) -> None:
	if actor.user_id == target.user_id:
		raise ForbiddenError("cannot_change_own_role")
	if target.role is models.GuildRole.OWNER:
		raise ForbiddenError("owner_role_not_revocable")
	ensure_grantable(actor, new_role)
	if target.role is models.GuildRole.ADMIN and actor.role is not models.GuildRole.OWNER:
		raise ForbiddenError("owner_required_for_admin")
