"""Domain models for guilds and memberships."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class GuildRole(str, Enum):
	OWNER = "owner"
	ADMIN = "admin"
	MEMBER = "member"


class MembershipStatus(str, Enum):
	PENDING = "pending"
	ACTIVE = "active"
	REMOVED = "removed"


class PendingKind(str, Enum):
	"""Why a membership is pending: an explicit invite or a self-initiated request."""

	INVITED = "invited"
	REQUESTED = "requested"


PRIVILEGED_ROLES = frozenset({GuildRole.OWNER, GuildRole.ADMIN})


class Guild(BaseModel):
	"""Represents a guild."""

	id: UUID
	name: str
	slug: str
	description: str = ""
	owner_id: str
	allow_self_join: bool = True
	created_at: datetime
	updated_at: datetime
	version: int = 1

	model_config = ConfigDict(from_attributes=True)


class Membership(BaseModel):
	"""Represents the (guild, user) membership row."""

	guild_id: UUID
	user_id: str
	role: GuildRole
	status: MembershipStatus
	pending_kind: Optional[PendingKind] = None
	invited_by: Optional[str] = None
	invite_token: Optional[str] = None
	joined_at: Optional[datetime] = None
	created_at: datetime
	updated_at: datetime
	version: int = 1

	model_config = ConfigDict(from_attributes=True)

	@property
	def is_active(self) -> bool:
		return self.status is MembershipStatus.ACTIVE

	@property
	def is_pending(self) -> bool:
		return self.status is MembershipStatus.PENDING

	@property
	def is_removed(self) -> bool:
		return self.status is MembershipStatus.REMOVED

	@property
	def is_privileged(self) -> bool:
		return self.is_active and self.role in PRIVILEGED_ROLES


class GuildSummary(BaseModel):
	"""Search result row."""

	id: UUID
	name: str
	slug: str
	description: str = ""
	owner_id: str
	created_at: datetime

	model_config = ConfigDict(from_attributes=True)
