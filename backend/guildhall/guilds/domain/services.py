"""Service layer orchestrating guild lifecycle and membership operations."""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional
from uuid import UUID, uuid4

from guildhall.guilds.domain import models, policies, slugs, state_machine, token_resolver
from guildhall.guilds.domain.exceptions import (
	AlreadyMemberError,
	ForbiddenError,
	GuildError,
	InvalidTokenError,
	NotFoundError,
	SlugConflictError,
	StateConflictError,
	ValidationError,
	VersionConflict,
)
from guildhall.guilds.domain.repo import BoundedGuildRepository, GuildRepository, InMemoryGuildRepository
from guildhall.guilds.infra import idempotency
from guildhall.guilds.schemas import dto
from guildhall.infra.auth import AuthenticatedUser
from guildhall.obs import metrics as obs_metrics
from guildhall.settings import settings

_LOG = logging.getLogger(__name__)

_MAX_QUERY_LENGTH = 200
# Postgres OFFSET is a bigint.
_MAX_OFFSET = 2**63 - 1


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _new_invite_token() -> str:
	return secrets.token_urlsafe(settings.guilds_invite_token_bytes)


_memory_repository: GuildRepository | None = None


def build_repository() -> GuildRepository:
	"""Return the configured storage backend.

	The in-memory backend is process wide so every router shares one store.
	"""
	global _memory_repository
	if settings.guilds_storage_backend == "memory":
		if _memory_repository is None:
			_memory_repository = InMemoryGuildRepository()
		return _memory_repository
	from guildhall.guilds.infra.postgres_repo import PostgresGuildRepository

	return PostgresGuildRepository()


class GuildsService:
	"""Implements guild creation, ownership, and the membership lifecycle."""

	def __init__(
		self,
		repository: GuildRepository | None = None,
		*,
		timeout: float | None = None,
		token_factory: Callable[[], str] | None = None,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self.repo = BoundedGuildRepository(
			repository or build_repository(),
			timeout=timeout if timeout is not None else settings.guilds_repo_timeout_seconds,
		)
		self._token_factory = token_factory or _new_invite_token
		self._clock = clock or _utcnow

	# ------------------------------------------------------------------
	# Helpers

	@staticmethod
	def _guild_to_response(guild: models.Guild) -> dto.GuildResponse:
		return dto.GuildResponse(
			id=guild.id,
			name=guild.name,
			slug=guild.slug,
			description=guild.description,
			owner_id=guild.owner_id,
			allow_self_join=guild.allow_self_join,
			created_at=guild.created_at,
			updated_at=guild.updated_at,
		)

	@staticmethod
	def _member_to_response(member: models.Membership) -> dto.MemberResponse:
		return dto.MemberResponse(**member.model_dump(mode="json", exclude={"invite_token", "version"}))

	async def _load_guild(self, guild_id: UUID) -> models.Guild:
		return policies.require_guild(await self.repo.get(guild_id))

	@contextmanager
	def _observe(self, event: str, *, guild_id: UUID | None, actor_id: str, subject_id: str | None = None) -> Iterator[None]:
		"""Record the outcome of one lifecycle event as a metric and a log line."""
		fields = {
			"event": event,
			"guild_id": str(guild_id) if guild_id else None,
			"actor_id": actor_id,
			"subject_id": subject_id,
		}
		try:
			yield
		except GuildError as exc:
			obs_metrics.record_transition(event, exc.detail)
			_LOG.info("guild_membership_rejected", extra={**fields, "result": exc.detail})
			raise
		obs_metrics.record_transition(event, "success")
		_LOG.info("guild_membership_transition", extra={**fields, "result": "success"})

	# ------------------------------------------------------------------
	# Guild operations

	async def create_guild(
		self,
		user: AuthenticatedUser,
		payload: dto.GuildCreateRequest,
		*,
		idempotency_key: str | None = None,
	) -> dto.GuildResponse:
		name = policies.ensure_name(payload.name)
		description = policies.ensure_description(payload.description)
		explicit_slug = slugs.normalise(payload.slug) if payload.slug and payload.slug.strip() else None
		key = idempotency.ensure_key(idempotency_key)
		body_hash = idempotency.compute_hash(scope=user.id, body=payload.model_dump())

		async def _producer() -> dto.GuildResponse:
			with self._observe("create", guild_id=None, actor_id=user.id):
				guild = await self._create_with_slug(
					owner_id=user.id,
					name=name,
					description=description,
					allow_self_join=payload.allow_self_join,
					explicit_slug=explicit_slug,
				)
			obs_metrics.inc_guilds_created()
			return self._guild_to_response(guild)

		return await idempotency.resolve(
			key=key,
			body_hash=body_hash,
			producer=_producer,
			serializer=lambda response: response.model_dump(mode="json"),
			deserializer=lambda raw: dto.GuildResponse.model_validate(raw),
		)

	async def _create_with_slug(
		self,
		*,
		owner_id: str,
		name: str,
		description: str,
		allow_self_join: bool,
		explicit_slug: str | None,
	) -> models.Guild:
		candidates = [explicit_slug] if explicit_slug else slugs.candidates(slugs.slugify(name))
		for candidate in candidates:
			now = self._clock()
			guild = models.Guild(
				id=uuid4(),
				name=name,
				slug=candidate,
				description=description,
				owner_id=owner_id,
				allow_self_join=allow_self_join,
				created_at=now,
				updated_at=now,
			)
			try:
				return await self.repo.create(guild, state_machine.found(guild, now=now))
			except SlugConflictError:
				if explicit_slug:
					raise
				_LOG.debug("guild_slug_taken", extra={"slug": candidate})
		raise SlugConflictError("slug_candidates_exhausted")

	async def get_guild(self, guild_id: UUID) -> dto.GuildResponse:
		return self._guild_to_response(await self._load_guild(guild_id))

	async def get_by_slug(self, slug: str) -> dto.GuildResponse:
		guild = await self.repo.get_by_slug(slug.strip().lower())
		return self._guild_to_response(policies.require_guild(guild))

	async def search_guilds(self, query: str | None, *, page: int = 0, size: int = 20) -> dto.GuildListResponse:
		if page < 0:
			raise ValidationError("page_out_of_range")
		if size < 1:
			raise ValidationError("size_out_of_range")
		size = min(size, settings.guilds_search_max_page_size)
		if query is not None and len(query) > _MAX_QUERY_LENGTH:
			raise ValidationError("query_too_long")
		if page * size > _MAX_OFFSET:
			rows = []
		else:
			rows = await self.repo.search(query, page=page, size=size)
		return dto.GuildListResponse(
			items=[dto.GuildSummaryResponse(**row.model_dump()) for row in rows],
			page=page,
			size=size,
		)

	async def update_guild(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		payload: dto.GuildUpdateRequest,
	) -> dto.GuildResponse:
		changes: dict[str, object] = {}
		if payload.name is not None:
			changes["name"] = policies.ensure_name(payload.name)
		if payload.description is not None:
			changes["description"] = policies.ensure_description(payload.description)
		if payload.slug is not None:
			changes["slug"] = slugs.normalise(payload.slug)
		if payload.allow_self_join is not None:
			changes["allow_self_join"] = payload.allow_self_join
		if not changes:
			raise ValidationError("no_updates_requested")

		with self._observe("update", guild_id=guild_id, actor_id=user.id):
			guild = await self._load_guild(guild_id)
			membership = await self.repo.find_membership(guild_id, user.id)
			policies.assert_is_owner(guild, membership, user.id)
			updated = guild.model_copy(
				update={**changes, "updated_at": self._clock(), "version": guild.version + 1}
			)
			try:
				saved = await self.repo.update(updated, expected_version=guild.version)
			except VersionConflict as exc:
				raise StateConflictError() from exc
		return self._guild_to_response(saved)

	async def delete_guild(self, user: AuthenticatedUser, guild_id: UUID) -> None:
		with self._observe("delete", guild_id=guild_id, actor_id=user.id):
			guild = await self._load_guild(guild_id)
			membership = await self.repo.find_membership(guild_id, user.id)
			policies.assert_is_owner(guild, membership, user.id)
			try:
				await self.repo.delete(guild_id, expected_version=guild.version)
			except VersionConflict as exc:
				raise StateConflictError() from exc
		obs_metrics.inc_guilds_deleted()

	# ------------------------------------------------------------------
	# Membership operations

	async def invite_member(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		payload: dto.InviteCreateRequest,
	) -> dto.InviteResponse:
		invitee_id = policies.ensure_user_id(payload.user_id)
		role = policies.parse_role(payload.role, default=models.GuildRole.MEMBER)

		with self._observe("invite", guild_id=guild_id, actor_id=user.id, subject_id=invitee_id):
			guild = await self._load_guild(guild_id)
			inviter = await self.repo.find_membership(guild_id, user.id)
			current = await self.repo.find_membership(guild_id, invitee_id)
			pending = state_machine.invite(
				guild=guild,
				inviter=inviter,
				current=current,
				invitee_id=invitee_id,
				role=role,
				token=self._token_factory(),
				now=self._clock(),
			)
			try:
				saved = await self.repo.upsert_membership(
					pending,
					expected_version=current.version if current else None,
				)
			except VersionConflict as exc:
				raise AlreadyMemberError("membership_changed") from exc
		assert saved.invite_token is not None
		return dto.InviteResponse(
			**self._member_to_response(saved).model_dump(),
			invite_token=saved.invite_token,
		)

	async def approve(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		request: token_resolver.ApprovalRequest,
	) -> dto.MemberResponse:
		by_token = isinstance(request, token_resolver.TokenApproval)
		event = "approve_invite" if by_token else "approve_request"
		subject_id = None if by_token else request.subject(user.id)

		with self._observe(event, guild_id=guild_id, actor_id=user.id, subject_id=subject_id):
			await self._load_guild(guild_id)
			approver: models.Membership | None = None
			if not by_token and subject_id != user.id:
				# Privilege is checked before the pending request is looked up.
				approver = policies.assert_can_admin(await self.repo.find_membership(guild_id, user.id))
			row = await token_resolver.resolve(
				self.repo,
				guild_id=guild_id,
				requester_id=user.id,
				request=request,
			)
			now = self._clock()
			if isinstance(request, token_resolver.TokenApproval):
				active = state_machine.approve_invite(row, approver_id=user.id, token=request.token, now=now)
			else:
				if approver is None:
					approver = row
				active = state_machine.approve_request(row, approver=approver, now=now)
			try:
				saved = await self.repo.upsert_membership(active, expected_version=row.version)
			except VersionConflict as exc:
				if by_token:
					raise InvalidTokenError() from exc
				raise NotFoundError("join_request_not_found") from exc
		return self._member_to_response(saved)

	async def approve_invite_by_token(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		token: str | None,
		*,
		user_id: str | None = None,
	) -> dto.MemberResponse:
		"""Approve using the loose HTTP body shape: a token, or none for join requests."""
		return await self.approve(user, guild_id, token_resolver.from_payload(token, user_id))

	async def join_guild(self, user: AuthenticatedUser, guild_id: UUID) -> dto.MemberResponse:
		with self._observe("join", guild_id=guild_id, actor_id=user.id, subject_id=user.id):
			guild = await self._load_guild(guild_id)
			current = await self.repo.find_membership(guild_id, user.id)
			requested = state_machine.request_join(guild=guild, current=current, user_id=user.id, now=self._clock())
			try:
				saved = await self.repo.upsert_membership(
					requested,
					expected_version=current.version if current else None,
				)
			except VersionConflict as exc:
				raise AlreadyMemberError("membership_changed") from exc
		return self._member_to_response(saved)

	async def leave_guild(self, user: AuthenticatedUser, guild_id: UUID) -> dto.MemberResponse:
		with self._observe("leave", guild_id=guild_id, actor_id=user.id, subject_id=user.id):
			await self._load_guild(guild_id)
			current = await self.repo.find_membership(guild_id, user.id)
			removed = state_machine.leave(current, now=self._clock())
			assert current is not None
			try:
				saved = await self.repo.upsert_membership(removed, expected_version=current.version)
			except VersionConflict as exc:
				raise NotFoundError("membership_not_found") from exc
		return self._member_to_response(saved)

	async def assign_role(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		target_user_id: str,
		role: str,
	) -> dto.MemberResponse:
		target_id = policies.ensure_user_id(target_user_id)
		new_role = policies.parse_role(role)

		with self._observe("assign_role", guild_id=guild_id, actor_id=user.id, subject_id=target_id):
			await self._load_guild(guild_id)
			actor = await self.repo.find_membership(guild_id, user.id)
			target = actor if target_id == user.id else await self.repo.find_membership(guild_id, target_id)
			updated = state_machine.assign_role(actor=actor, target=target, new_role=new_role, now=self._clock())
			if updated is target:
				return self._member_to_response(updated)
			assert target is not None
			try:
				saved = await self.repo.upsert_membership(updated, expected_version=target.version)
			except VersionConflict as exc:
				raise StateConflictError() from exc
		return self._member_to_response(saved)

	async def transfer_ownership(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		payload: dto.OwnershipTransferRequest,
	) -> dto.GuildResponse:
		target_id = policies.ensure_user_id(payload.user_id)

		with self._observe("transfer_ownership", guild_id=guild_id, actor_id=user.id, subject_id=target_id):
			guild = await self._load_guild(guild_id)
			owner = await self.repo.find_membership(guild_id, user.id)
			target = owner if target_id == user.id else await self.repo.find_membership(guild_id, target_id)
			now = self._clock()
			demoted, promoted = state_machine.transfer_ownership(
				guild=guild,
				owner=owner,
				target=target,
				actor_id=user.id,
				now=now,
			)
			assert owner is not None and target is not None
			updated = guild.model_copy(
				update={"owner_id": promoted.user_id, "updated_at": now, "version": guild.version + 1}
			)
			try:
				saved = await self.repo.transfer_ownership(
					updated,
					demoted,
					promoted,
					guild_version=guild.version,
					demoted_version=owner.version,
					promoted_version=target.version,
				)
			except VersionConflict as exc:
				raise StateConflictError() from exc
		return self._guild_to_response(saved)

	async def list_members(
		self,
		user: AuthenticatedUser,
		guild_id: UUID,
		*,
		status: Optional[str] = None,
	) -> dto.MemberListResponse:
		try:
			wanted = models.MembershipStatus(status) if status else models.MembershipStatus.ACTIVE
		except ValueError as exc:
			raise ValidationError("invalid_status") from exc
		await self._load_guild(guild_id)
		if wanted is not models.MembershipStatus.ACTIVE:
			viewer = await self.repo.find_membership(guild_id, user.id)
			if not policies.can_view_pending(viewer):
				raise ForbiddenError("admin_role_required")
		rows = await self.repo.list_memberships(guild_id, status=wanted)
		ordered = sorted(rows, key=lambda row: -policies.ROLE_HIERARCHY[row.role])
		return dto.MemberListResponse(items=[self._member_to_response(row) for row in ordered])
