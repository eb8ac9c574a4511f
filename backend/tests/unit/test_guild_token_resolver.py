from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest

from guildhall.guilds.domain import models, token_resolver
from guildhall.guilds.domain.exceptions import InvalidTokenError, NotFoundError, ValidationError

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)
GUILD_ID = uuid4()


def _pending(user_id: str, kind: models.PendingKind, token: str | None = None) -> models.Membership:
	return models.Membership(
		guild_id=GUILD_ID,
		user_id=user_id,
		role=models.GuildRole.MEMBER,
		status=models.MembershipStatus.PENDING,
		pending_kind=kind,
		invite_token=token,
		created_at=NOW,
		updated_at=NOW,
	)


class StubRepository:
	def __init__(self, *rows: models.Membership) -> None:
		self.rows = list(rows)
		self.calls: list[tuple[str, str]] = []

	async def find_membership(self, guild_id: UUID, user_id: str):
		self.calls.append(("find_membership", user_id))
		return next((row for row in self.rows if row.guild_id == guild_id and row.user_id == user_id), None)

	async def find_membership_by_token(self, guild_id: UUID, token: str):
		self.calls.append(("find_membership_by_token", token))
		return next((row for row in self.rows if row.guild_id == guild_id and row.invite_token == token), None)


def test_from_payload_builds_variants():
	assert token_resolver.from_payload("abc") == token_resolver.TokenApproval("abc")
	assert token_resolver.from_payload(None) == token_resolver.RequestApproval()
	assert token_resolver.from_payload("", None) == token_resolver.RequestApproval()
	assert token_resolver.from_payload(None, " bob ") == token_resolver.RequestApproval("bob")


def test_from_payload_rejects_token_with_user_id():
	with pytest.raises(ValidationError) as exc:
		token_resolver.from_payload("abc", "bob")
	assert exc.value.detail == "token_and_user_id_exclusive"


@pytest.mark.parametrize("token", ["", "   "])
def test_empty_token_is_reserved(token):
	with pytest.raises(ValidationError) as exc:
		token_resolver.TokenApproval(token)
	assert exc.value.detail == "empty_token_reserved"


def test_request_subject_defaults_to_requester():
	assert token_resolver.RequestApproval().subject("alice") == "alice"
	assert token_resolver.RequestApproval("bob").subject("alice") == "bob"


@pytest.mark.asyncio
async def test_resolve_token_returns_invited_row():
	row = _pending("bob", models.PendingKind.INVITED, token="tok")
	repo = StubRepository(row)
	resolved = await token_resolver.resolve(
		repo,
		guild_id=GUILD_ID,
		requester_id="bob",
		request=token_resolver.TokenApproval("tok"),
	)
	assert resolved == row
	assert repo.calls == [("find_membership_by_token", "tok")]


@pytest.mark.asyncio
@pytest.mark.parametrize("requester, token", [("carol", "tok"), ("bob", "other")])
async def test_resolve_token_rejects_foreign_or_unknown(requester, token):
	repo = StubRepository(_pending("bob", models.PendingKind.INVITED, token="tok"))
	with pytest.raises(InvalidTokenError):
		await token_resolver.resolve(
			repo,
			guild_id=GUILD_ID,
			requester_id=requester,
			request=token_resolver.TokenApproval(token),
		)


@pytest.mark.asyncio
async def test_resolve_request_targets_named_requester():
	row = _pending("bob", models.PendingKind.REQUESTED)
	repo = StubRepository(row)
	resolved = await token_resolver.resolve(
		repo,
		guild_id=GUILD_ID,
		requester_id="admin",
		request=token_resolver.RequestApproval("bob"),
	)
	assert resolved == row
	assert repo.calls == [("find_membership", "bob")]


@pytest.mark.asyncio
async def test_resolve_request_ignores_invites():
	repo = StubRepository(_pending("bob", models.PendingKind.INVITED, token="tok"))
	with pytest.raises(NotFoundError) as exc:
		await token_resolver.resolve(
			repo,
			guild_id=GUILD_ID,
			requester_id="bob",
			request=token_resolver.RequestApproval(),
		)
	assert exc.value.detail == "join_request_not_found"
