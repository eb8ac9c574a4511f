"""Pydantic schemas for the guilds API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

_ROLE_PATTERN = "^(owner|admin|member)$"


class GuildCreateRequest(BaseModel):
	name: str = Field(..., min_length=1, max_length=100)
	slug: Optional[str] = Field(default=None, max_length=100)
	description: Optional[str] = Field(default=None, max_length=1000)
	allow_self_join: bool = True


class GuildUpdateRequest(BaseModel):
	name: Optional[str] = Field(default=None, min_length=1, max_length=100)
	slug: Optional[str] = Field(default=None, min_length=1, max_length=100)
	description: Optional[str] = Field(default=None, max_length=1000)
	allow_self_join: Optional[bool] = None


class GuildResponse(BaseModel):
	id: UUID
	name: str
	slug: str
	description: str
	owner_id: str
	allow_self_join: bool
	created_at: datetime
	updated_at: datetime


class GuildSummaryResponse(BaseModel):
	id: UUID
	name: str
	slug: str
	description: str
	owner_id: str
	created_at: datetime


class GuildListResponse(BaseModel):
	items: List[GuildSummaryResponse]
	page: int
	size: int


class MemberResponse(BaseModel):
	guild_id: UUID
	user_id: str
	role: str
	status: str
	pending_kind: Optional[str] = None
	invited_by: Optional[str] = None
	joined_at: Optional[datetime] = None
	created_at: datetime
	updated_at: datetime


class InviteResponse(MemberResponse):
	invite_token: str


class MemberListResponse(BaseModel):
	items: List[MemberResponse]


class InviteCreateRequest(BaseModel):
	user_id: str = Field(..., min_length=1, max_length=128)
	role: Optional[str] = Field(default=None, pattern=_ROLE_PATTERN)


class ApproveRequest(BaseModel):
	token: Optional[str] = Field(default=None, max_length=256)
	user_id: Optional[str] = Field(default=None, max_length=128)


class RoleAssignmentRequest(BaseModel):
	role: str = Field(..., pattern=_ROLE_PATTERN)


class OwnershipTransferRequest(BaseModel):
	user_id: str = Field(..., min_length=1, max_length=128)
