"""Guild API routes."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Response

from guildhall.guilds.api._errors import to_http_error
from guildhall.guilds.domain.services import GuildsService
from guildhall.guilds.schemas import dto
from guildhall.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(tags=["guilds"])
_service = GuildsService()


@router.post("/guilds", response_model=dto.GuildResponse, status_code=201)
async def create_guild_endpoint(
	payload: dto.GuildCreateRequest,
	idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.GuildResponse:
	try:
		return await _service.create_guild(auth_user, payload, idempotency_key=idempotency_key)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.get("/guilds", response_model=dto.GuildListResponse)
async def search_guilds_endpoint(
	q: Optional[str] = Query(default=None, max_length=200),
	page: int = Query(default=0, ge=0),
	size: int = Query(default=20, ge=1),
) -> dto.GuildListResponse:
	try:
		return await _service.search_guilds(q, page=page, size=size)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.get("/guilds/by-slug/{slug}", response_model=dto.GuildResponse)
async def get_guild_by_slug_endpoint(slug: str) -> dto.GuildResponse:
	try:
		return await _service.get_by_slug(slug)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.get("/guilds/{guild_id}", response_model=dto.GuildResponse)
async def get_guild_endpoint(guild_id: UUID) -> dto.GuildResponse:
	try:
		return await _service.get_guild(guild_id)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.patch("/guilds/{guild_id}", response_model=dto.GuildResponse)
async def patch_guild_endpoint(
	guild_id: UUID,
	payload: dto.GuildUpdateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.GuildResponse:
	try:
		return await _service.update_guild(auth_user, guild_id, payload)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.delete(
	"/guilds/{guild_id}",
	status_code=204,
	response_class=Response,
	response_model=None,
)
async def delete_guild_endpoint(
	guild_id: UUID,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> None:
	try:
		await _service.delete_guild(auth_user, guild_id)
		return None
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc


@router.post("/guilds/{guild_id}/transfer-ownership", response_model=dto.GuildResponse)
async def transfer_ownership_endpoint(
	guild_id: UUID,
	payload: dto.OwnershipTransferRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.GuildResponse:
	try:
		return await _service.transfer_ownership(auth_user, guild_id, payload)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc
