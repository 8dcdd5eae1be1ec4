"""Per-tenant ruleset cache with TTL and version-aware reload."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from backend.docpipe.db.repositories import RulesetRepository
from backend.docpipe.models.common import utc_now
from backend.docpipe.models.ruleset import ParsedRuleset
from backend.docpipe.review.parser import parse_ruleset
from backend.docpipe.utils.metrics import PrometheusBatchMetrics

logger = logging.getLogger(__name__)


@dataclass
class RulesetSnapshot:
    """Parsed ruleset plus the version (update timestamp) it came from."""

    ruleset: ParsedRuleset = field(default_factory=ParsedRuleset)
    version: datetime | None = None


@dataclass
class CachedRuleset:
    """Cached ruleset entry."""

    snapshot: RulesetSnapshot
    cached_at: datetime
    ttl_seconds: int

    def is_fresh(self, now: datetime) -> bool:
        """Check if cache entry is still valid."""
        return (now - self.cached_at).total_seconds() < self.ttl_seconds


class RulesetCache:
    """Caches parsed rulesets by tenant.

    Expired entries are refreshed from the repository; text is reparsed only
    when the stored update timestamp changed.
    """

    def __init__(
        self,
        repository: RulesetRepository,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
        metrics: PrometheusBatchMetrics | None = None,
    ) -> None:
        self._repository = repository
        self._ttl_seconds = ttl_seconds
        self._clock = clock or utc_now
        self._metrics = metrics or PrometheusBatchMetrics()
        self._entries: dict[str, CachedRuleset] = {}

    async def get(self, tenant_id: str) -> RulesetSnapshot:
        """Get the tenant's ruleset, loading or refreshing as needed."""
        now = self._clock()
        entry = self._entries.get(tenant_id)
        if entry and entry.is_fresh(now):
            self._metrics.inc_ruleset_cache("hit")
            return entry.snapshot

        self._metrics.inc_ruleset_cache("miss")
        stored = await self._repository.get_ruleset(tenant_id)

        if stored is None:
            snapshot = RulesetSnapshot()
        elif entry and entry.snapshot.version == stored.updated_at:
            snapshot = entry.snapshot
        else:
            logger.info(f"Loading ruleset for tenant {tenant_id} (version {stored.updated_at})")
            snapshot = RulesetSnapshot(
                ruleset=parse_ruleset(stored.content), version=stored.updated_at
            )

        self._entries[tenant_id] = CachedRuleset(
            snapshot=snapshot, cached_at=now, ttl_seconds=self._ttl_seconds
        )
        return snapshot

    def invalidate(self, tenant_id: str | None = None) -> None:
        """Drop one tenant's entry, or all entries."""
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)
