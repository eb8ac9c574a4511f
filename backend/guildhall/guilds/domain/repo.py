"""Guild repository contract plus the in-memory and time-bounded implementations.

All mutating calls are conditional. ``expected_version`` is the version the
caller read; ``None`` means the row must not exist yet. A lost race raises
:class:`VersionConflict`, which the service translates per operation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Optional, Protocol, Sequence, TypeVar
from uuid import UUID

from guildhall.guilds.domain import models
from guildhall.guilds.domain.exceptions import (
	NotFoundError,
	RepositoryUnavailableError,
	SlugConflictError,
	VersionConflict,
)
from guildhall.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

T = TypeVar("T")


class GuildRepository(Protocol):
	async def get(self, guild_id: UUID) -> models.Guild | None:
		...

	async def get_by_slug(self, slug: str) -> models.Guild | None:
		...

	async def create(self, guild: models.Guild, owner: models.Membership) -> models.Guild:
		...

	async def update(self, guild: models.Guild, *, expected_version: int) -> models.Guild:
		...

	async def delete(self, guild_id: UUID, *, expected_version: int) -> None:
		...

	async def find_membership(self, guild_id: UUID, user_id: str) -> models.Membership | None:
		...

	async def find_membership_by_token(self, guild_id: UUID, token: str) -> models.Membership | None:
		...

	async def upsert_membership(
		self,
		membership: models.Membership,
		*,
		expected_version: Optional[int],
	) -> models.Membership:
		...

	async def delete_memberships_for_guild(self, guild_id: UUID) -> int:
		...

	async def list_memberships(
		self,
		guild_id: UUID,
		*,
		status: models.MembershipStatus | None = None,
	) -> Sequence[models.Membership]:
		...

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
		...

	async def search(self, query: str | None, *, page: int, size: int) -> Sequence[models.GuildSummary]:
		...


class BoundedGuildRepository:
	"""Wraps a repository so every call finishes within ``timeout`` seconds.

	Expiry surfaces as :class:`RepositoryUnavailableError`; the underlying
	call is cancelled.
	"""

	def __init__(self, inner: GuildRepository, *, timeout: float) -> None:
		if timeout <= 0:
			raise ValueError("timeout must be positive")
		self._inner = inner
		self.timeout = timeout

	async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
		started = time.perf_counter()
		try:
			return await asyncio.wait_for(awaitable, timeout=self.timeout)
		except asyncio.TimeoutError as exc:
			obs_metrics.record_repository_unavailable(operation)
			_LOG.warning(
				"guild_repository_timeout",
				extra={"operation": operation, "timeout_s": self.timeout},
			)
			raise RepositoryUnavailableError("repository_timeout") from exc
		except RepositoryUnavailableError:
			obs_metrics.record_repository_unavailable(operation)
			raise
		finally:
			obs_metrics.observe_repository_call(operation, time.perf_counter() - started)

	async def get(self, guild_id: UUID) -> models.Guild | None:
		return await self._call("get", self._inner.get(guild_id))

	async def get_by_slug(self, slug: str) -> models.Guild | None:
		return await self._call("get_by_slug", self._inner.get_by_slug(slug))

	async def create(self, guild: models.Guild, owner: models.Membership) -> models.Guild:
		return await self._call("create", self._inner.create(guild, owner))

	async def update(self, guild: models.Guild, *, expected_version: int) -> models.Guild:
		return await self._call("update", self._inner.update(guild, expected_version=expected_version))

	async def delete(self, guild_id: UUID, *, expected_version: int) -> None:
		await self._call("delete", self._inner.delete(guild_id, expected_version=expected_version))

	async def find_membership(self, guild_id: UUID, user_id: str) -> models.Membership | None:
		return await self._call("find_membership", self._inner.find_membership(guild_id, user_id))

	async def find_membership_by_token(self, guild_id: UUID, token: str) -> models.Membership | None:
		return await self._call(
			"find_membership_by_token",
			self._inner.find_membership_by_token(guild_id, token),
		)

	async def upsert_membership(
		self,
		membership: models.Membership,
		*,
		expected_version: Optional[int],
	) -> models.Membership:
		return await self._call(
			"upsert_membership",
			self._inner.upsert_membership(membership, expected_version=expected_version),
		)

	async def delete_memberships_for_guild(self, guild_id: UUID) -> int:
		return await self._call(
			"delete_memberships_for_guild",
			self._inner.delete_memberships_for_guild(guild_id),
		)

	async def list_memberships(
		self,
		guild_id: UUID,
		*,
		status: models.MembershipStatus | None = None,
	) -> Sequence[models.Membership]:
		return await self._call("list_memberships", self._inner.list_memberships(guild_id, status=status))

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
		return await self._call(
			"transfer_ownership",
			self._inner.transfer_ownership(
				guild,
				demoted,
				promoted,
				guild_version=guild_version,
				demoted_version=demoted_version,
				promoted_version=promoted_version,
			),
		)

	async def search(self, query: str | None, *, page: int, size: int) -> Sequence[models.GuildSummary]:
		return await self._call("search", self._inner.search(query, page=page, size=size))


class InMemoryGuildRepository(GuildRepository):
	"""Simple repository implementation for development and tests.

	A single lock serialises writers so compare-and-swap on ``version`` behaves
	like the conditional updates of the Postgres implementation.
	"""

	def __init__(self) -> None:
		self._guilds: dict[UUID, models.Guild] = {}
		self._slugs: dict[str, UUID] = {}
		self._memberships: dict[tuple[UUID, str], models.Membership] = {}
		self._lock = asyncio.Lock()

	async def get(self, guild_id: UUID) -> models.Guild | None:
		guild = self._guilds.get(guild_id)
		return guild.model_copy() if guild else None

	async def get_by_slug(self, slug: str) -> models.Guild | None:
		guild_id = self._slugs.get(slug)
		return await self.get(guild_id) if guild_id else None

	async def create(self, guild: models.Guild, owner: models.Membership) -> models.Guild:
		async with self._lock:
			if guild.slug in self._slugs:
				raise SlugConflictError("guild_slug_exists")
			if guild.id in self._guilds:
				raise VersionConflict("guild", str(guild.id))
			self._guilds[guild.id] = guild.model_copy()
			self._slugs[guild.slug] = guild.id
			self._memberships[(guild.id, owner.user_id)] = owner.model_copy()
		return guild.model_copy()

	async def update(self, guild: models.Guild, *, expected_version: int) -> models.Guild:
		async with self._lock:
			current = self._guilds.get(guild.id)
			if current is None or current.version != expected_version:
				raise VersionConflict("guild", str(guild.id))
			if guild.slug != current.slug:
				if guild.slug in self._slugs:
					raise SlugConflictError("guild_slug_exists")
				del self._slugs[current.slug]
				self._slugs[guild.slug] = guild.id
			self._guilds[guild.id] = guild.model_copy()
		return guild.model_copy()

	async def delete(self, guild_id: UUID, *, expected_version: int) -> None:
		async with self._lock:
			current = self._guilds.get(guild_id)
			if current is None or current.version != expected_version:
				raise VersionConflict("guild", str(guild_id))
			self._drop_memberships(guild_id)
			del self._guilds[guild_id]
			self._slugs.pop(current.slug, None)

	async def find_membership(self, guild_id: UUID, user_id: str) -> models.Membership | None:
		row = self._memberships.get((guild_id, user_id))
		return row.model_copy() if row else None

	async def find_membership_by_token(self, guild_id: UUID, token: str) -> models.Membership | None:
		for (row_guild, _user), row in self._memberships.items():
			if row_guild == guild_id and row.invite_token is not None and row.invite_token == token:
				return row.model_copy()
		return None

	async def upsert_membership(
		self,
		membership: models.Membership,
		*,
		expected_version: Optional[int],
	) -> models.Membership:
		key = (membership.guild_id, membership.user_id)
		async with self._lock:
			if membership.guild_id not in self._guilds:
				raise NotFoundError("guild_not_found")
			current = self._memberships.get(key)
			current_version = current.version if current is not None else None
			if current_version != expected_version:
				raise VersionConflict("membership", f"{membership.guild_id}:{membership.user_id}")
			self._memberships[key] = membership.model_copy()
		return membership.model_copy()

	async def delete_memberships_for_guild(self, guild_id: UUID) -> int:
		async with self._lock:
			return self._drop_memberships(guild_id)

	def _drop_memberships(self, guild_id: UUID) -> int:
		keys = [key for key in self._memberships if key[0] == guild_id]
		for key in keys:
			del self._memberships[key]
		return len(keys)

	async def list_memberships(
		self,
		guild_id: UUID,
		*,
		status: models.MembershipStatus | None = None,
	) -> Sequence[models.Membership]:
		rows = [
			row.model_copy()
			for (row_guild, _user), row in self._memberships.items()
			if row_guild == guild_id and (status is None or row.status is status)
		]
		rows.sort(key=lambda row: (row.created_at, row.user_id))
		return rows

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
		async with self._lock:
			current = self._guilds.get(guild.id)
			if current is None or current.version != guild_version:
				raise VersionConflict("guild", str(guild.id))
			for row, expected in ((demoted, demoted_version), (promoted, promoted_version)):
				existing = self._memberships.get((row.guild_id, row.user_id))
				if existing is None or existing.version != expected:
					raise VersionConflict("membership", f"{row.guild_id}:{row.user_id}")
			self._guilds[guild.id] = guild.model_copy()
			self._memberships[(demoted.guild_id, demoted.user_id)] = demoted.model_copy()
			self._memberships[(promoted.guild_id, promoted.user_id)] = promoted.model_copy()
		return guild.model_copy()

	async def search(self, query: str | None, *, page: int, size: int) -> Sequence[models.GuildSummary]:
		needle = (query or "").strip().lower()
		matches = [
			guild
			for guild in self._guilds.values()
			if not needle
			or needle in guild.name.lower()
			or needle in guild.slug
			or needle in guild.description.lower()
		]
		matches.sort(key=lambda guild: (guild.created_at, str(guild.id)))
		window = matches[page * size : (page + 1) * size]
		return [models.GuildSummary.model_validate(guild.model_dump()) for guild in window]
