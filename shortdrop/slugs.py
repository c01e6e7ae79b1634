"""Short slug allocation on top of an :class:`~shortdrop.aliases.AliasIndex`.

Each draw picks 8 symbols uniformly from ``[a-zA-Z0-9]`` and tries to bind it.
When the index offers an atomic ``put_if_absent`` the bind is a single
conditional write. Otherwise the allocator falls back to check-then-act: it
reads the slug and writes it if nothing was there. Two allocators racing on
the same candidate can both pass the check in that mode and the last write
wins; no lock closes that window.
"""

import enum
import logging
import random
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from .aliases import AliasIndex
from .errors import AllocationExhaustedError
from .logs import sanitize_log_value

SLUG_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits
SLUG_LENGTH = 8
DEFAULT_MAX_ATTEMPTS = 10

logger = logging.getLogger("shortdrop.links")


class MintOutcome(str, enum.Enum):
    MINTED = "minted"
    COLLIDED = "collided"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class MintResult:
    outcome: MintOutcome
    slug: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.outcome is MintOutcome.MINTED


def is_valid_slug(value: str) -> bool:
    return len(value) == SLUG_LENGTH and all(char in SLUG_ALPHABET for char in value)


class SlugAllocator:
    def __init__(
        self,
        index: AliasIndex,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.index = index
        self.max_attempts = max(1, int(max_attempts))
        self._rng = rng or secrets.SystemRandom()

    @property
    def atomic(self) -> bool:
        return callable(getattr(self.index, "put_if_absent", None))

    def generate_slug(self) -> str:
        return "".join(self._rng.choice(SLUG_ALPHABET) for _ in range(SLUG_LENGTH))

    def bind(self, slug: str, target_key: str, ttl: Optional[int] = None) -> MintResult:
        """Bind an already chosen *slug*; ``COLLIDED`` if it is taken."""

        if self.atomic:
            entry = self.index.put_if_absent(slug, target_key, ttl)
            if entry is None:
                return MintResult(MintOutcome.COLLIDED, slug)
            return MintResult(MintOutcome.MINTED, slug)

        if self.index.get(slug) is not None:
            return MintResult(MintOutcome.COLLIDED, slug)
        # Another writer may bind the same slug between the check and this put.
        self.index.put(slug, target_key, ttl)
        return MintResult(MintOutcome.MINTED, slug)

    def attempt(
        self,
        target_key: str,
        ttl: Optional[int] = None,
        candidate: Optional[str] = None,
    ) -> MintResult:
        return self.bind(candidate or self.generate_slug(), target_key, ttl)

    def mint(self, target_key: str, ttl: Optional[int] = None) -> MintResult:
        for attempt_number in range(1, self.max_attempts + 1):
            result = self.attempt(target_key, ttl)
            if result.ok:
                return MintResult(MintOutcome.MINTED, result.slug, attempt_number)
            logger.debug(
                "slug_collision slug=%s attempt=%d", result.slug, attempt_number
            )

        logger.warning(
            "slug_allocation_exhausted key=%s attempts=%d",
            sanitize_log_value(target_key),
            self.max_attempts,
        )
        return MintResult(MintOutcome.EXHAUSTED, None, self.max_attempts)

    def allocate(self, target_key: str, ttl: Optional[int] = None) -> str:
        result = self.mint(target_key, ttl)
        if not result.ok:
            raise AllocationExhaustedError(result.attempts)
        return result.slug

    def reserve(self) -> MintResult:
        """Find a candidate with no live entry without binding it."""

        for attempt_number in range(1, self.max_attempts + 1):
            candidate = self.generate_slug()
            if self.index.get(candidate) is None:
                return MintResult(MintOutcome.MINTED, candidate, attempt_number)
        return MintResult(MintOutcome.EXHAUSTED, None, self.max_attempts)
