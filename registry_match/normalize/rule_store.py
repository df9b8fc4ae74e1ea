"""
Rule store for RegistryMatch.

Holds the active normalization rules and the administrative region
abbreviation mapping in process memory, refreshed read-through after a
time-to-live and invalidated on demand.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .rules import NormalizationRule, parse_rules
from ..errors import DependencyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable view of the rules and region mapping a caller normalizes with."""

    rules: Tuple[NormalizationRule, ...]
    region_mappings: Dict[str, str]
    loaded_at: float


class ReadThroughCache:
    """
    Single-value cache that reloads synchronously once expired.

    Concurrent callers may reload redundantly; the cached entry is replaced
    by a single attribute assignment so readers always see a complete value.
    """

    def __init__(self, loader: Callable[[], Any], ttl_seconds: float, name: str,
                 clock: Callable[[], float] = time.monotonic):
        self.loader = loader
        self.ttl_seconds = ttl_seconds
        self.name = name
        self.clock = clock

        # (value, loaded_at) or None when empty
        self._entry: Optional[Tuple[Any, float]] = None
        self._last_good: Optional[Tuple[Any, float]] = None

    def get(self) -> Tuple[Any, float]:
        """
        Return the cached value, reloading it when empty or expired.

        Returns:
            Tuple of (value, loaded_at)

        Raises:
            DependencyError: Reload failed and no value was ever loaded
        """
        entry = self._entry
        now = self.clock()

        if entry is not None and now - entry[1] < self.ttl_seconds:
            return entry

        try:
            value = self.loader()
        except Exception as e:
            fallback = self._last_good
            if fallback is None:
                logger.error(f"Failed to load {self.name} and no cached copy exists: {e}")
                raise DependencyError(f"Unable to load {self.name}: {e}") from e

            logger.warning(f"Failed to reload {self.name}, serving stale copy: {e}")
            return fallback

        entry = (value, now)
        self._entry = entry
        self._last_good = entry
        logger.debug(f"Reloaded {self.name}")
        return entry

    def invalidate(self):
        """Drop the cached value so the next read reloads it."""
        self._entry = None
        logger.info(f"Invalidated {self.name} cache")


class StaticRuleSource:
    """
    In-process rule source backed by plain lists.

    Args:
        rules: Rule rows in the stored format (rule_id, rule_name, rule_type,
               rule_spec, priority, is_active)
        region_mappings: Abbreviation to canonical region name
    """

    def __init__(self, rules: List[Dict[str, Any]], region_mappings: Optional[Dict[str, str]] = None):
        self.rules = list(rules)
        self.region_mappings = dict(region_mappings or {})

    def load_rules(self) -> List[Dict[str, Any]]:
        return list(self.rules)

    def load_region_mappings(self) -> Dict[str, str]:
        mappings = dict(self.region_mappings)
        # Canonical names map to themselves
        for full in list(mappings.values()):
            mappings.setdefault(full, full)
        return mappings


class RuleStore:
    """
    Caches the active rule set and region mapping from a rule source.

    The source must provide load_rules() returning stored rule rows and
    load_region_mappings() returning the abbreviation mapping.
    """

    def __init__(self, source, rule_ttl_seconds: float = 3600,
                 region_ttl_seconds: float = 3600,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize rule store.

        Args:
            source: Rule and region source
            rule_ttl_seconds: Lifetime of the cached rule set
            region_ttl_seconds: Lifetime of the cached region mapping
            clock: Monotonic clock, injectable for tests
        """
        self.source = source
        self._rules = ReadThroughCache(
            lambda: tuple(parse_rules(self.source.load_rules())),
            rule_ttl_seconds, "normalization rules", clock
        )
        self._regions = ReadThroughCache(
            lambda: dict(self.source.load_region_mappings()),
            region_ttl_seconds, "region mappings", clock
        )

        logger.info("Initialized RuleStore")

    @classmethod
    def from_config(cls, source, config: Dict) -> "RuleStore":
        cache_config = config.get("cache", {})
        return cls(
            source,
            rule_ttl_seconds=cache_config.get("rule_ttl_seconds", 3600),
            region_ttl_seconds=cache_config.get("region_ttl_seconds", 3600)
        )

    def snapshot(self) -> RuleSnapshot:
        """
        Capture the current rules and region mapping.

        Returns:
            Rule snapshot; callers keep using it even if the store is
            invalidated while they run

        Raises:
            DependencyError: A cold cache could not be loaded
        """
        rules, rules_loaded_at = self._rules.get()
        mappings, regions_loaded_at = self._regions.get()
        return RuleSnapshot(
            rules=rules,
            region_mappings=mappings,
            loaded_at=min(rules_loaded_at, regions_loaded_at)
        )

    def region_mappings(self) -> Dict[str, str]:
        mappings, _ = self._regions.get()
        return mappings

    def invalidate(self):
        """Clear both caches; the next snapshot reloads from the source."""
        self._rules.invalidate()
        self._regions.invalidate()
