"""Idempotency helpers backed by Redis."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Awaitable, Callable, TypeVar

from guildhall.guilds.domain.exceptions import IdempotencyConflict, ValidationError
from guildhall.infra.redis import redis_client
from guildhall.obs import metrics as obs_metrics
from guildhall.settings import settings

_LOG = logging.getLogger(__name__)

T = TypeVar("T")
_MAX_KEY_LENGTH = 200


@dataclass(slots=True)
class IdempotencyRecord:
	"""Serialized value stored in Redis."""

	hash: str
	payload: Any

	def to_json(self) -> str:
		return json.dumps({"hash": self.hash, "payload": self.payload})

	@staticmethod
	def from_json(raw: str) -> "IdempotencyRecord":
		data = json.loads(raw)
		return IdempotencyRecord(hash=data.get("hash", ""), payload=data.get("payload"))


def ensure_key(key: str | None) -> str | None:
	if key is not None and len(key) > _MAX_KEY_LENGTH:
		raise ValidationError("idempotency_key_too_long")
	return key or None


def compute_hash(*, scope: str, body: Any | None) -> str:
	"""Return a stable hash of the caller and request body used for conflict detection."""
	materialised = json.dumps({"scope": scope, "body": body}, sort_keys=True, separators=(",", ":"), default=str)
	return sha256(materialised.encode()).hexdigest()


async def resolve(
	*,
	key: str | None,
	body_hash: str,
	producer: Callable[[], Awaitable[T]],
	serializer: Callable[[T], Any],
	deserializer: Callable[[Any], T],
) -> T:
	"""Resolve an idempotent operation with the provided producer.

	If the key already exists and matches the incoming hash, return the cached payload.
	If the stored hash differs, raise :class:`IdempotencyConflict`.
	Otherwise compute, persist, and return the new payload.
	"""
	if not key:
		return await producer()

	redis_key = f"guilds:idemp:{key}"
	cached = await redis_client.get(redis_key)
	if cached:
		record = IdempotencyRecord.from_json(cached)
		if record.hash != body_hash:
			obs_metrics.record_idempotency("conflict")
			raise IdempotencyConflict()
		obs_metrics.record_idempotency("hit")
		return deserializer(record.payload)

	obs_metrics.record_idempotency("miss")
	result = await producer()
	record = IdempotencyRecord(hash=body_hash, payload=serializer(result))
	stored = await redis_client.set(redis_key, record.to_json(), ex=settings.idempotency_ttl_seconds, nx=True)
	if not stored:
		# Another request stored a value after our check; fetch again to confirm.
		cached_after = await redis_client.get(redis_key)
		if cached_after:
			record_after = IdempotencyRecord.from_json(cached_after)
			if record_after.hash != body_hash:
				raise IdempotencyConflict()
			return deserializer(record_after.payload)
		_LOG.warning("Idempotency key %s stored concurrently without payload", key)
	return result
