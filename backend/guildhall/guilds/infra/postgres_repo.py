"""asyncpg implementation of the guild repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence
from uuid import UUID

import asyncpg

from guildhall.guilds.domain import models
from guildhall.guilds.domain.exceptions import (
	NotFoundError,
	RepositoryUnavailableError,
	SlugConflictError,
	VersionConflict,
)
from guildhall.infra.postgres import get_pool

_CONNECTION_ERRORS = (
	asyncpg.PostgresConnectionError,
	asyncpg.InterfaceError,
	asyncpg.TooManyConnectionsError,
	ConnectionError,
	OSError,
)

_MAX_BIGINT = 2**63 - 1

_MEMBERSHIP_COLUMNS = (
	"guild_id, user_id, role, status, pending_kind, invited_by, invite_token,"
	" joined_at, created_at, updated_at, version"
)


def _escape_like(value: str) -> str:
	return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _membership_params(row: models.Membership) -> tuple[object, ...]:
	return (
		row.guild_id,
		row.user_id,
		row.role.value,
		row.status.value,
		row.pending_kind.value if row.pending_kind else None,
		row.invited_by,
		row.invite_token,
		row.joined_at,
		row.created_at,
		row.updated_at,
		row.version,
	)


class PostgresGuildRepository:
	"""Thin data-access layer around asyncpg."""

	def __init__(self, pool: asyncpg.Pool | None = None) -> None:
		self._pool = pool

	@asynccontextmanager
	async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = self._pool or await get_pool()
			async with pool.acquire() as conn:
				yield conn
		except _CONNECTION_ERRORS as exc:
			raise RepositoryUnavailableError() from exc

	# --- Guild operations -------------------------------------------------

	async def get(self, guild_id: UUID) -> models.Guild | None:
		async with self._connection() as conn:
			record = await conn.fetchrow("SELECT * FROM guild WHERE id=$1", guild_id)
		return models.Guild.model_validate(dict(record)) if record else None

	async def get_by_slug(self, slug: str) -> models.Guild | None:
		async with self._connection() as conn:
			record = await conn.fetchrow("SELECT * FROM guild WHERE slug=$1", slug)
		return models.Guild.model_validate(dict(record)) if record else None

	async def create(self, guild: models.Guild, owner: models.Membership) -> models.Guild:
		async with self._connection() as conn:
			async with conn.transaction():
				try:
					record = await conn.fetchrow(
						"""
						INSERT INTO guild (id, name, slug, description, owner_id, allow_self_join,
							created_at, updated_at, version)
						VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
						RETURNING *
						""",
						guild.id,
						guild.name,
						guild.slug,
						guild.description,
						guild.owner_id,
						guild.allow_self_join,
						guild.created_at,
						guild.updated_at,
						guild.version,
					)
				except asyncpg.UniqueViolationError as exc:
					if "slug" in (exc.constraint_name or ""):
						raise SlugConflictError("guild_slug_exists") from exc
					raise VersionConflict("guild", str(guild.id)) from exc
				await conn.execute(
					f"""
					INSERT INTO guild_membership ({_MEMBERSHIP_COLUMNS})
					VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
					""",
					*_membership_params(owner),
				)
		return models.Guild.model_validate(dict(record))

	async def update(self, guild: models.Guild, *, expected_version: int) -> models.Guild:
		async with self._connection() as conn:
			try:
				record = await conn.fetchrow(
					"""
					UPDATE guild
					SET name=$3, slug=$4, description=$5, owner_id=$6, allow_self_join=$7,
						updated_at=$8, version=$9
					WHERE id=$1 AND version=$2
					RETURNING *
					""",
					guild.id,
					expected_version,
					guild.name,
					guild.slug,
					guild.description,
					guild.owner_id,
					guild.allow_self_join,
					guild.updated_at,
					guild.version,
				)
			except asyncpg.UniqueViolationError as exc:
				raise SlugConflictError("guild_slug_exists") from exc
		if record is None:
			raise VersionConflict("guild", str(guild.id))
		return models.Guild.model_validate(dict(record))

	async def delete(self, guild_id: UUID, *, expected_version: int) -> None:
		async with self._connection() as conn:
			async with conn.transaction():
				locked = await conn.fetchval(
					"SELECT version FROM guild WHERE id=$1 FOR UPDATE",
					guild_id,
				)
				if locked is None or locked != expected_version:
					raise VersionConflict("guild", str(guild_id))
				await conn.execute("DELETE FROM guild_membership WHERE guild_id=$1", guild_id)
				await conn.execute("DELETE FROM guild WHERE id=$1", guild_id)

	async def search(self, query: str | None, *, page: int, size: int) -> Sequence[models.GuildSummary]:
		offset = page * size
		if offset > _MAX_BIGINT:
			return []
		needle = (query or "").strip()
		pattern = f"%{_escape_like(needle)}%"
		async with self._connection() as conn:
			rows = await conn.fetch(
				"""
				SELECT id, name, slug, description, owner_id, created_at
				FROM guild
				WHERE $1 = '' OR name ILIKE $2 OR slug ILIKE $2 OR description ILIKE $2
				ORDER BY created_at ASC, id ASC
				LIMIT $3 OFFSET $4
				""",
				needle,
				pattern,
				size,
				offset,
			)
		return [models.GuildSummary.model_validate(dict(row)) for row in rows]

	# --- Membership operations --------------------------------------------

	async def find_membership(self, guild_id: UUID, user_id: str) -> models.Membership | None:
		async with self._connection() as conn:
			record = await conn.fetchrow(
				"SELECT * FROM guild_membership WHERE guild_id=$1 AND user_id=$2",
				guild_id,
				user_id,
			)
		return models.Membership.model_validate(dict(record)) if record else None

	async def find_membership_by_token(self, guild_id: UUID, token: str) -> models.Membership | None:
		async with self._connection() as conn:
			record = await conn.fetchrow(
				"SELECT * FROM guild_membership WHERE guild_id=$1 AND invite_token=$2",
				guild_id,
				token,
			)
		return models.Membership.model_validate(dict(record)) if record else None

	async def upsert_membership(
		self,
		membership: models.Membership,
		*,
		expected_version: Optional[int],
	) -> models.Membership:
		params = _membership_params(membership)
		async with self._connection() as conn:
			try:
				if expected_version is None:
					record = await conn.fetchrow(
						f"""
						INSERT INTO guild_membership ({_MEMBERSHIP_COLUMNS})
						VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
						ON CONFLICT (guild_id, user_id) DO NOTHING
						RETURNING *
						""",
						*params,
					)
				else:
					record = await conn.fetchrow(
						"""
						UPDATE guild_membership
						SET role=$3, status=$4, pending_kind=$5, invited_by=$6, invite_token=$7,
							joined_at=$8, created_at=$9, updated_at=$10, version=$11
						WHERE guild_id=$1 AND user_id=$2 AND version=$12
						RETURNING *
						""",
						*params,
						expected_version,
					)
			except asyncpg.ForeignKeyViolationError as exc:
				raise NotFoundError("guild_not_found") from exc
			except asyncpg.UniqueViolationError as exc:
				raise VersionConflict("membership", f"{membership.guild_id}:{membership.user_id}") from exc
		if record is None:
			raise VersionConflict("membership", f"{membership.guild_id}:{membership.user_id}")
		return models.Membership.model_validate(dict(record))

	async def delete_memberships_for_guild(self, guild_id: UUID) -> int:
		async with self._connection() as conn:
			result = await conn.execute("DELETE FROM guild_membership WHERE guild_id=$1", guild_id)
		return int(result.split()[-1]) if result else 0

	async def list_memberships(
		self,
		guild_id: UUID,
		*,
		status: models.MembershipStatus | None = None,
	) -> Sequence[models.Membership]:
		async with self._connection() as conn:
			if status is not None:
				rows = await conn.fetch(
					"""
					SELECT * FROM guild_membership
					WHERE guild_id=$1 AND status=$2
					ORDER BY created_at ASC, user_id ASC
					""",
					guild_id,
					status.value,
				)
			else:
				rows = await conn.fetch(
					"""
					SELECT * FROM guild_membership
					WHERE guild_id=$1
					ORDER BY created_at ASC, user_id ASC
					""",
					guild_id,
				)
		return [models.Membership.model_validate(dict(row)) for row in rows]

	async def transfer_ownership(
		self,
		guild: models.Guild,
		demoted: models.Membership,
		promoted: models.Membership,
		*,
		guild_version: int,
		demoted_version: int,
		promoted_version: int,
	) -> models.Guild:
		async with self._connection() as conn:
			async with conn.transaction():
				record = await conn.fetchrow(
					"""
					UPDATE guild SET owner_id=$3, updated_at=$4, version=$5
					WHERE id=$1 AND version=$2
					RETURNING *
					""",
					guild.id,
					guild_version,
					guild.owner_id,
					guild.updated_at,
					guild.version,
				)
				if record is None:
					raise VersionConflict("guild", str(guild.id))
				# Demote first so the single-owner index never sees two owners.
				for row, expected in ((demoted, demoted_version), (promoted, promoted_version)):
					updated = await conn.fetchval(
						"""
						UPDATE guild_membership SET role=$3, updated_at=$4, version=$5
						WHERE guild_id=$1 AND user_id=$2 AND version=$6 AND status='active'
						RETURNING version
						""",
						row.guild_id,
						row.user_id,
						row.role.value,
						row.updated_at,
						row.version,
						expected,
					)
					if updated is None:
						raise VersionConflict("membership", f"{row.guild_id}:{row.user_id}")
		return models.Guild.model_validate(dict(record))
