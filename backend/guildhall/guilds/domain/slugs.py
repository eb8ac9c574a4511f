"""Slug normalisation and deterministic disambiguation."""

from __future__ import annotations

import re
import unicodedata
from typing import Iterator

from guildhall.guilds.domain.exceptions import ValidationError

SLUG_MAX_LENGTH = 100
MAX_SUFFIX_ATTEMPTS = 50
_FALLBACK_SLUG = "guild"

_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
	"""Derive a slug from a display name: ``"Star Forge" -> "star-forge"``."""
	folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
	lowered = folded.strip().lower()
	slug = _NON_ALNUM_RE.sub("-", lowered).strip("-")
	slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
	return slug or _FALLBACK_SLUG


def normalise(slug: str) -> str:
	"""Validate an explicitly supplied slug."""
	cleaned = slug.strip().lower()
	if not cleaned:
		raise ValidationError("slug_required")
	if len(cleaned) > SLUG_MAX_LENGTH:
		raise ValidationError("slug_too_long")
	if not _SLUG_RE.match(cleaned):
		raise ValidationError("invalid_slug")
	return cleaned


def candidates(base: str) -> Iterator[str]:
	"""Yield ``base``, ``base-2``, ``base-3``... each trimmed to the length limit."""
	yield base
	for index in range(2, MAX_SUFFIX_ATTEMPTS + 1):
		suffix = f"-{index}"
		head = base[: SLUG_MAX_LENGTH - len(suffix)].rstrip("-")
		yield f"{head}{suffix}"
