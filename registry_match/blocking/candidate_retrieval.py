"""
Candidate retrieval for RegistryMatch.

Narrows the registry to a short list of entries worth full scoring using a
cheap token-overlap pre-score against canonical names and recorded aliases.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..errors import DependencyError, InputValidationError
from ..match.similarity import quick_similarity
from ..storage.registry_store import RegistryEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    entry: RegistryEntry
    pre_score: int
    matched_via: str = "canonical"

    @property
    def standard_code(self) -> str:
        return self.entry.standard_code


class CandidateRetriever:
    """
    Pre-filters registry entries for a normalized name.

    The pre-score only decides which entries are scored; it never ranks
    final results.
    """

    def __init__(self, registry_store, config: Optional[Dict] = None):
        """
        Initialize candidate retriever.

        Args:
            registry_store: Store providing list_entries_with_aliases(region_code)
            config: Retrieval configuration with default_limit and max_limit
        """
        config = config or {}
        self.registry_store = registry_store
        self.default_limit = config.get("default_limit", 5)
        self.max_limit = config.get("max_limit", 100)

        self._last_registry_size = 0
        self._last_candidates = 0

        logger.info(f"Initialized CandidateRetriever (default limit {self.default_limit})")

    def retrieve(self, normalized_name: str, region_code: Optional[str] = None,
                 limit: Optional[int] = None,
                 name_normalizer: Optional[Callable[[str], str]] = None) -> List[Candidate]:
        """
        Retrieve the top candidates for a normalized name.

        Args:
            normalized_name: Normalized input name
            region_code: Restrict to this region when given
            limit: Maximum candidates to return
            name_normalizer: Applied to canonical names before pre-scoring

        Returns:
            Candidates with non-zero pre-score, highest first, ties in
            registration order

        Raises:
            InputValidationError: limit outside 1..max_limit
            DependencyError: Registry store unavailable
        """
        if limit is None:
            limit = self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.max_limit:
            raise InputValidationError(f"limit must be between 1 and {self.max_limit}, got {limit}")

        try:
            entries = self.registry_store.list_entries_with_aliases(region_code)
        except DependencyError:
            raise
        except Exception as e:
            raise DependencyError(f"Registry store unavailable: {e}") from e

        candidates = []
        for entry in entries:
            canonical_name = name_normalizer(entry.canonical_name) if name_normalizer else entry.canonical_name
            best_score = quick_similarity(normalized_name, canonical_name)
            matched_via = "canonical"

            for alias in entry.aliases:
                alias_score = quick_similarity(normalized_name, alias)
                if alias_score > best_score:
                    best_score = alias_score
                    matched_via = f"alias:{alias}"

            if best_score > 0:
                candidates.append(Candidate(entry, best_score, matched_via))

        candidates.sort(key=lambda c: (-c.pre_score, c.entry.seq))

        self._last_registry_size = len(entries)
        self._last_candidates = len(candidates)

        logger.debug(f"Retrieved {len(candidates)} of {len(entries)} registry entries for '{normalized_name}'")
        return candidates[:limit]

    def get_retrieval_statistics(self) -> Dict[str, float]:
        """
        Statistics for the most recent retrieval.

        Returns:
            Registry size, candidates passing the pre-filter and reduction ratio
        """
        registry_size = self._last_registry_size
        kept = self._last_candidates
        reduction_ratio = 1 - (kept / registry_size) if registry_size > 0 else 0

        return {
            "registry_size": registry_size,
            "candidates": kept,
            "reduction_ratio": reduction_ratio,
            "reduction_percentage": reduction_ratio * 100,
        }
