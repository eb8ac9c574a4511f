"""Membership lifecycle API routes."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from guildhall.guilds.api._errors import to_http_error
from guildhall.guilds.domain.services import GuildsService
from guildhall.guilds.schemas import dto
from guildhall.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(tags=["guilds:members"])
_service = GuildsService()


@router.post("/guilds/{guild_id}/invite", response_model=dto.InviteResponse, status_code=201)
async def invite_member_endpoint(
	guild_id: UUID,
	payload: dto.InviteCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.InviteResponse:
	try:
		return await _service.invite_member(auth_user, guild_id, payload)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.post("/guilds/{guild_id}/approve", response_model=dto.MemberResponse)
async def approve_endpoint(
	guild_id: UUID,
	payload: dto.ApproveRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.MemberResponse:
	try:
		return await _service.approve_invite_by_token(
			auth_user,
			guild_id,
			payload.token,
			user_id=payload.user_id,
		)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.post("/guilds/{guild_id}/join", response_model=dto.MemberResponse)
async def join_guild_endpoint(
	guild_id: UUID,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.MemberResponse:
	try:
		return await _service.join_guild(auth_user, guild_id)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.post("/guilds/{guild_id}/leave", response_model=dto.MemberResponse)
async def leave_guild_endpoint(
	guild_id: UUID,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.MemberResponse:
	try:
		return await _service.leave_guild(auth_user, guild_id)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.post("/guilds/{guild_id}/assign-role/{user_id}", response_model=dto.MemberResponse)
async def assign_role_endpoint(
	guild_id: UUID,
	user_id: str,
	payload: dto.RoleAssignmentRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.MemberResponse:
	try:
		return await _service.assign_role(auth_user, guild_id, user_id, payload.role)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.get("/guilds/{guild_id}/members", response_model=dto.MemberListResponse)
async def list_members_endpoint(
	guild_id: UUID,
	status: Optional[str] = Query(default=None, pattern="^(pending|active|removed)$"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.MemberListResponse:
	try:
		return await _service.list_members(auth_user, guild_id, status=status)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc
