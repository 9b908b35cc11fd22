"""
Canonical subject identifiers.

Subjects reach the scheduler in several encodings: bare numbers, Discord
mention markup (``<@123>``, ``<@!123>``), contact-style ids with a domain
suffix (``123@c.us``) and internal aliases that must be looked up. All of
that sniffing lives here; the scheduler only ever sees the output of
:meth:`CanonicalIdentityResolver.resolve`.
"""

from __future__ import annotations

import re
from typing import Callable, Mapping

from aegis.util.logger import get_logger

logger = get_logger("identity")

_MENTION_PATTERN = re.compile(r"^<@!?(\d+)>$")
_CONTACT_PATTERN = re.compile(r"^(\d+)@[\w.]+$")
_NON_DIGITS = re.compile(r"[^0-9]")


def numeric_part(subject_id: str) -> str:
    """Strip everything except digits from ``subject_id``."""
    return _NON_DIGITS.sub("", subject_id or "")


def subjects_match(stored: str, candidate: str) -> bool:
    """Return True when two ids are equal or share the same non-empty digits.

    Older persisted entries may hold a different encoding of the same
    subject, so duplicate checks fall back to the numeric form.
    """
    if stored == candidate:
        return True
    a = numeric_part(stored)
    b = numeric_part(candidate)
    return bool(a) and a == b


class CanonicalIdentityResolver:
    """Map any accepted id encoding to the canonical bare snowflake string.

    Args:
        aliases: Optional static alias table (alias -> canonical id).
        alias_lookup: Optional callable consulted for ids that look like an
            alias; returns the canonical id or None.
    """

    def __init__(
        self,
        aliases: Mapping[str, str] | None = None,
        alias_lookup: Callable[[str], str | None] | None = None,
    ) -> None:
        self._aliases = dict(aliases or {})
        self._alias_lookup = alias_lookup

    def resolve(self, raw_id: object) -> str:
        """Return the canonical form of ``raw_id``.

        Resolution is idempotent: ``resolve(resolve(x)) == resolve(x)``.

        Raises:
            ValueError: If ``raw_id`` is empty.
        """
        if isinstance(raw_id, int):
            return str(raw_id)

        text = str(raw_id or "").strip()
        if not text:
            raise ValueError("Cannot resolve an empty subject id")

        known = self._known_encoding(text)
        if known is not None:
            return known

        canonical = self._aliases.get(text)
        if canonical is None and self._alias_lookup is not None:
            try:
                canonical = self._alias_lookup(text)
            except Exception as exc:
                logger.warning("[IDENTITY] Alias lookup failed for %s: %s", text, exc)
                canonical = None

        if canonical:
            # Alias targets may themselves be in a non-canonical encoding
            canonical = str(canonical).strip()
            return self._known_encoding(canonical) or canonical

        logger.debug("[IDENTITY] Unrecognized id %s kept verbatim", text)
        return text

    @staticmethod
    def _known_encoding(text: str) -> str | None:
        if text.isdigit():
            return text
        match = _MENTION_PATTERN.match(text) or _CONTACT_PATTERN.match(text)
        if match:
            return match.group(1)
        return None


# Module-level singleton
identity_resolver = CanonicalIdentityResolver()
