"""
Match orchestrator for RegistryMatch.

Coordinates name normalization, address hashing, candidate retrieval,
scoring and audit logging for resolution and search requests, and exposes
the alias, grouping and metrics operations of the engine.
"""

import argparse
import json
import logging
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import pandas as pd

from ..config import load_config, setup_logging, DEFAULT_CONFIG_PATH
from ..errors import InputValidationError, RegistryMatchError
from ..normalize.rule_store import RuleStore, RuleSnapshot
from ..normalize.text_normalizer import TextNormalizer, AppliedRule
from ..normalize.address_normalizer import AddressNormalizer, has_address
from ..blocking.candidate_retrieval import CandidateRetriever, Candidate
from ..match.score_engine import ScoreEngine, ScoreResult, MatchSignal, Recommendation
from ..merge.grouping import GroupingEngine, GroupingResult, GroupMember
from ..audit.audit_logger import AuditLogger, ValidationLogEntry, create_audit_logger
from ..reporting.metrics import MetricsAggregator, MetricsSnapshot
from ..storage.registry_store import RegistryStore, RegistryEntry

logger = logging.getLogger(__name__)

GROUP_SCOPE_KEYS = ("region", "sub_region")

BATCH_COLUMNS = [
    "source_name", "normalized_name", "matched_standard_code", "matched_name", "score",
    "recommendation", "candidate_count", "success", "failure_reason",
]


@dataclass(frozen=True)
class RankedCandidate:
    """A scored registry entry."""

    standard_code: str
    canonical_name: str
    score: int
    recommendation: str
    signals: Tuple[MatchSignal, ...]
    matched_signals: int
    pre_score: int
    matched_via: str
    registration_seq: int

    @classmethod
    def from_score(cls, candidate: Candidate, registry_name: str, result: ScoreResult) -> "RankedCandidate":
        return cls(
            standard_code=candidate.standard_code,
            canonical_name=registry_name,
            score=result.score,
            recommendation=result.recommendation,
            signals=result.signals,
            matched_signals=result.matched_signals,
            pre_score=candidate.pre_score,
            matched_via=candidate.matched_via,
            registration_seq=candidate.entry.seq
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "standard_code": self.standard_code,
            "canonical_name": self.canonical_name,
            "score": self.score,
            "recommendation": self.recommendation,
            "matched_signals": self.matched_signals,
            "pre_score": self.pre_score,
            "matched_via": self.matched_via,
            "signals": [s.to_dict() for s in self.signals],
        }


@dataclass(frozen=True)
class ResolutionResult:
    run_id: str
    source_name: str
    normalized_name: str
    normalization_trace: Tuple[AppliedRule, ...]
    address_hash: Optional[str]
    ranked_recommendations: Tuple[RankedCandidate, ...]
    best_match: Optional[RankedCandidate]
    success: bool
    failure_reason: Optional[str] = None
    log_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source_name": self.source_name,
            "normalized_name": self.normalized_name,
            "normalization_trace": [r.to_dict() for r in self.normalization_trace],
            "address_hash": self.address_hash,
            "ranked_recommendations": [c.to_dict() for c in self.ranked_recommendations],
            "best_match": self.best_match.to_dict() if self.best_match else None,
            "success": self.success,
            "failure_reason": self.failure_reason,
            "log_id": self.log_id,
        }


def _require_name(value: Any, argument: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InputValidationError(f"{argument} must be a non-empty string")
    return value


class MatchOrchestrator:
    """
    Entry point for institution name resolution.

    Both sides of every comparison are normalized with the same rule
    snapshot: the input name at request time and each candidate's canonical
    name at scoring time.
    """

    def __init__(self, rule_store: RuleStore, registry_store: RegistryStore,
                 audit_logger: AuditLogger, config: Optional[Dict] = None):
        """
        Initialize orchestrator with its collaborators.

        Args:
            rule_store: Normalization rule and region cache
            registry_store: Registry, alias and group member store
            audit_logger: Validation log store
            config: Full configuration dictionary
        """
        self.config = config or {}
        self.rule_store = rule_store
        self.registry_store = registry_store
        self.audit_logger = audit_logger

        normalization_config = self.config.get("normalization", {})
        retrieval_config = self.config.get("retrieval", {})

        self.text_normalizer = TextNormalizer(rule_store, normalization_config.get("max_passes", 4))
        self.address_normalizer = AddressNormalizer(rule_store)
        self.score_engine = ScoreEngine(self.config.get("scoring", {}))
        self.retriever = CandidateRetriever(registry_store, retrieval_config)
        self.grouping_engine = GroupingEngine(self.config.get("grouping", {}))
        self.metrics = MetricsAggregator(audit_logger, registry_store)

        self.default_limit = retrieval_config.get("default_limit", 5)
        self.max_limit = retrieval_config.get("max_limit", 100)

        # Stage timing state
        self.stage_times = {}

        # Canonical names normalized under one rule snapshot: (snapshot, {raw: normalized})
        self._canonical_cache: Tuple[Optional[RuleSnapshot], Dict[str, str]] = (None, {})
        self._reported_unnormalized = set()

        logger.info("Initialized MatchOrchestrator")

    @classmethod
    def from_config(cls, config: Dict) -> "MatchOrchestrator":
        """
        Build an orchestrator backed by the configured SQLite stores.

        Args:
            config: Full configuration dictionary

        Returns:
            Orchestrator using the registry database as rule source
        """
        storage = config.get("storage", {})
        registry_store = RegistryStore(storage.get("registry_db", "data/registry.db"))
        audit_logger = create_audit_logger(config)
        rule_store = RuleStore.from_config(registry_store, config)
        return cls(rule_store, registry_store, audit_logger, config)

    def _start_stage_timer(self, stage_name: str):
        """Start timing for a stage."""
        self.stage_times[stage_name] = time.time()
        logger.info(f"Starting stage: {stage_name}")

    def _end_stage_timer(self, stage_name: str):
        """End timing for a stage."""
        if stage_name in self.stage_times:
            duration = time.time() - self.stage_times[stage_name]
            logger.info(f"Completed stage: {stage_name} in {duration:.2f} seconds")

    def _validate_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.max_limit:
            raise InputValidationError(f"limit must be an integer between 1 and {self.max_limit}, got {limit}")
        return limit

    def _snapshot_normalizer(self, snapshot: RuleSnapshot) -> Callable[[str], str]:
        """
        Memoized canonical-name normalizer for one rule snapshot.

        The memo is dropped as soon as a request arrives with different rules
        or region mappings.
        """
        cached_snapshot, cache = self._canonical_cache
        if (cached_snapshot is None or cached_snapshot.rules is not snapshot.rules
                or cached_snapshot.region_mappings is not snapshot.region_mappings):
            cache = {}
            self._canonical_cache = (snapshot, cache)

        def normalize(name: str) -> str:
            normalized = cache.get(name)
            if normalized is None:
                normalized = self.text_normalizer.normalize(name, snapshot).normalized
                cache[name] = normalized
            return normalized

        return normalize

    def _registry_name(self, entry: RegistryEntry, normalize: Callable[[str], str]) -> str:
        """Canonical name passed through the request's snapshot normalizer."""
        normalized = normalize(entry.canonical_name)
        if normalized != entry.canonical_name and entry.standard_code not in self._reported_unnormalized:
            self._reported_unnormalized.add(entry.standard_code)
            logger.warning(f"Registry entry {entry.standard_code} has an unnormalized canonical name "
                           f"'{entry.canonical_name}' (normalizes to '{normalized}')")
        return normalized

    def _rank(self, candidates: List[Candidate], normalized_name: str, normalize: Callable[[str], str],
              address_hash: Optional[str], region_code: Optional[str]) -> List[RankedCandidate]:
        ranked = []
        for candidate in candidates:
            entry = candidate.entry
            registry_name = self._registry_name(entry, normalize)
            result = self.score_engine.score(
                normalized_name, registry_name,
                candidate_address_hash=address_hash,
                registry_address_hash=entry.address_hash,
                candidate_region=region_code,
                registry_region=entry.region_code
            )
            ranked.append(RankedCandidate.from_score(candidate, registry_name, result))

        ranked.sort(key=lambda c: (-c.score, c.registration_seq))
        return ranked

    def resolve(self, source_name: str, source_address: Optional[str] = None,
                region_code: Optional[str] = None, source_table: str = "unknown",
                run_id: Optional[str] = None, lot_address: Optional[str] = None,
                run_type: str = "interactive") -> ResolutionResult:
        """
        Resolve a raw institution name against the registry.

        Args:
            source_name: Raw institution name
            source_address: Raw road address
            region_code: Region code of the source record
            source_table: Label of the table the name came from
            run_id: Validation run id; a new one is generated when omitted
            lot_address: Raw lot address
            run_type: interactive or batch

        Returns:
            Resolution result with ranked candidates and best match

        Raises:
            InputValidationError: Empty source name
            DependencyError: Rule or registry source unavailable
        """
        _require_name(source_name, "source_name")
        run_id = run_id or str(uuid.uuid4())

        snapshot = self.rule_store.snapshot()
        normalization = self.text_normalizer.normalize(source_name, snapshot)

        address_hash = None
        if has_address(source_address, lot_address):
            address_hash = self.address_normalizer.normalize(source_address, lot_address, region_code,
                                                             snapshot.region_mappings).address_hash

        normalize = self._snapshot_normalizer(snapshot)
        candidates = self.retriever.retrieve(normalization.normalized, region_code, self.default_limit, normalize)
        ranked = self._rank(candidates, normalization.normalized, normalize, address_hash, region_code)

        best_match = ranked[0] if ranked else None
        if best_match is None:
            success = False
            failure_reason = "no candidates"
        elif best_match.recommendation == Recommendation.REJECT:
            success = False
            failure_reason = f"best candidate rejected (score {best_match.score})"
        else:
            success = True
            failure_reason = None

        entry = ValidationLogEntry(
            run_id=run_id,
            run_type=run_type,
            source_table=source_table,
            source_name=source_name,
            normalized_name=normalization.normalized,
            matched_standard_code=best_match.standard_code if best_match else None,
            match_confidence=best_match.score if best_match else None,
            recommendation=best_match.recommendation if best_match else None,
            candidate_count=len(ranked),
            success=success,
            failure_reason=failure_reason,
            signals=[s.to_dict() for s in best_match.signals] if best_match else []
        )

        log_id = None
        try:
            log_id = self.audit_logger.log_validation(entry)
        except Exception as e:
            logger.error(f"Failed to write validation log for '{source_name}': {e}")

        logger.info(f"Resolved '{source_name}' -> "
                    f"{best_match.standard_code if best_match else 'no match'} "
                    f"({best_match.recommendation if best_match else failure_reason})")

        return ResolutionResult(
            run_id=run_id,
            source_name=source_name,
            normalized_name=normalization.normalized,
            normalization_trace=normalization.applied_rules,
            address_hash=address_hash,
            ranked_recommendations=tuple(ranked),
            best_match=best_match,
            success=success,
            failure_reason=failure_reason,
            log_id=log_id
        )

    def search(self, search_name: str, region_code: Optional[str] = None,
               limit: Optional[int] = None) -> List[RankedCandidate]:
        """
        Interactive lookup without address input and without logging.

        Args:
            search_name: Raw name to look up
            region_code: Region filter
            limit: Maximum results, 1 to max_limit

        Returns:
            Ranked candidates, best first

        Raises:
            InputValidationError: Empty name or limit out of range
        """
        _require_name(search_name, "search_name")
        limit = self._validate_limit(limit)

        snapshot = self.rule_store.snapshot()
        normalized_name = self.text_normalizer.normalize(search_name, snapshot).normalized

        normalize = self._snapshot_normalizer(snapshot)
        candidates = self.retriever.retrieve(normalized_name, region_code, limit, normalize)
        return self._rank(candidates, normalized_name, normalize, None, region_code)

    def add_alias(self, standard_code: str, alias_name: str, source: Optional[str] = None,
                  address: Optional[str] = None) -> int:
        """
        Record a confirmed alias for an existing registry entry.

        The alias name and address are normalized exactly as resolve would.

        Args:
            standard_code: Owning standard code
            alias_name: Raw alias text
            source: Source label
            address: Raw source address

        Returns:
            Alias id

        Raises:
            InputValidationError: Empty alias or unknown standard code
        """
        _require_name(alias_name, "alias_name")

        entry = self.registry_store.get_entry(standard_code)
        if entry is None:
            raise InputValidationError(f"Unknown standard code {standard_code}")

        snapshot = self.rule_store.snapshot()
        normalization = self.text_normalizer.normalize(alias_name, snapshot)

        normalized_address = None
        address_matched = False
        if has_address(address, None):
            result = self.address_normalizer.normalize(address, None, entry.region_code, snapshot.region_mappings)
            normalized_address = result.road_address
            address_matched = entry.address_hash is not None and result.address_hash == entry.address_hash

        return self.registry_store.add_alias(
            standard_code,
            normalization.normalized,
            source=source,
            source_address=normalized_address,
            normalization_applied=bool(normalization.applied_rules),
            address_matched=address_matched
        )

    def register_entry(self, standard_code: str, canonical_name: str,
                       road_address: Optional[str] = None,
                       lot_address: Optional[str] = None,
                       region_code: Optional[str] = None) -> RegistryEntry:
        """
        Register an institution with its canonical name stored normalized.

        Args:
            standard_code: Unique standard code
            canonical_name: Raw canonical name
            road_address: Road address
            lot_address: Lot address
            region_code: Region code

        Returns:
            Stored registry entry
        """
        _require_name(standard_code, "standard_code")
        _require_name(canonical_name, "canonical_name")

        snapshot = self.rule_store.snapshot()
        normalized_name = self.text_normalizer.normalize(canonical_name, snapshot).normalized

        address_hash = None
        if has_address(road_address, lot_address):
            address_hash = self.address_normalizer.normalize(road_address, lot_address, region_code,
                                                             snapshot.region_mappings).address_hash

        return self.registry_store.add_entry(standard_code, normalized_name, address_hash, region_code)

    def group(self, scope: Optional[Dict[str, str]] = None,
              threshold: Optional[float] = None) -> GroupingResult:
        """
        Group near-duplicate institutions within a scope.

        Args:
            scope: Mapping with optional region and sub_region
            threshold: Similarity threshold in (0, 1]

        Returns:
            Grouping result

        Raises:
            InputValidationError: Unknown scope key or invalid threshold
        """
        scope = scope or {}
        unknown = set(scope) - set(GROUP_SCOPE_KEYS)
        if unknown:
            raise InputValidationError(f"Unknown grouping scope keys: {sorted(unknown)}")

        self._start_stage_timer("institution_grouping")
        try:
            rows = self.registry_store.list_group_members(scope.get("region"), scope.get("sub_region"))
            members = [GroupMember.from_row(row) for row in rows]
            return self.grouping_engine.group(members, threshold)
        finally:
            self._end_stage_timer("institution_grouping")

    def record_metrics(self, metric_date: date) -> Optional[MetricsSnapshot]:
        """Compute and store the metrics snapshot for a day."""
        return self.metrics.record_metrics(metric_date)

    def resolve_batch(self, df: pd.DataFrame, name_column: str = "source_name",
                      address_column: Optional[str] = None,
                      region_column: Optional[str] = None,
                      source_table: str = "batch") -> pd.DataFrame:
        """
        Resolve every row of a DataFrame under one validation run.

        Args:
            df: Input records
            name_column: Column with raw names
            address_column: Column with road addresses
            region_column: Column with region codes
            source_table: Source table label for the log

        Returns:
            DataFrame with one result row per input row
        """
        self._start_stage_timer("batch_resolution")
        run_id = str(uuid.uuid4())
        results = []

        try:
            for _, row in df.iterrows():
                source_name = row[name_column]
                address = row[address_column] if address_column else None
                region_code = row[region_column] if region_column else None

                address = address if isinstance(address, str) else None
                region_code = region_code if isinstance(region_code, str) and region_code else None

                try:
                    result = self.resolve(source_name, address, region_code,
                                          source_table=source_table, run_id=run_id, run_type="batch")
                except InputValidationError as e:
                    logger.warning(f"Skipping batch row: {e}")
                    results.append({
                        "source_name": source_name,
                        "normalized_name": None,
                        "matched_standard_code": None,
                        "matched_name": None,
                        "score": None,
                        "recommendation": None,
                        "candidate_count": 0,
                        "success": False,
                        "failure_reason": "invalid input",
                    })
                    continue

                best = result.best_match
                results.append({
                    "source_name": source_name,
                    "normalized_name": result.normalized_name,
                    "matched_standard_code": best.standard_code if best else None,
                    "matched_name": best.canonical_name if best else None,
                    "score": best.score if best else None,
                    "recommendation": best.recommendation if best else None,
                    "candidate_count": len(result.ranked_recommendations),
                    "success": result.success,
                    "failure_reason": result.failure_reason,
                })
        finally:
            self._end_stage_timer("batch_resolution")

        results_df = pd.DataFrame(results, columns=BATCH_COLUMNS)
        results_df["run_id"] = run_id

        matched = int(results_df["success"].sum()) if len(results_df) else 0
        logger.info(f"Batch run {run_id}: {matched}/{len(results_df)} resolved")
        return results_df


def _print_json(payload: Any):
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def main():
    """Main entry point for the RegistryMatch command line."""
    parser = argparse.ArgumentParser(description="RegistryMatch Institution Name Resolution")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve one institution name")
    resolve_parser.add_argument("name", help="Raw institution name")
    resolve_parser.add_argument("--address", help="Road address")
    resolve_parser.add_argument("--lot-address", help="Lot address")
    resolve_parser.add_argument("--region", help="Region code")
    resolve_parser.add_argument("--source-table", default="cli", help="Source table label")

    search_parser = subparsers.add_parser("search", help="Look up registry candidates")
    search_parser.add_argument("name", help="Name to look up")
    search_parser.add_argument("--region", help="Region code")
    search_parser.add_argument("--limit", type=int, default=None, help="Maximum results")

    batch_parser = subparsers.add_parser("resolve-batch", help="Resolve names from a CSV file")
    batch_parser.add_argument("--input", required=True, help="Input CSV path")
    batch_parser.add_argument("--output", required=True, help="Output CSV path")
    batch_parser.add_argument("--name-column", default="source_name")
    batch_parser.add_argument("--address-column")
    batch_parser.add_argument("--region-column")
    batch_parser.add_argument("--source-table", default="batch")

    group_parser = subparsers.add_parser("group", help="Group near-duplicate institutions")
    group_parser.add_argument("--region", help="Region scope")
    group_parser.add_argument("--sub-region", help="Sub-region scope")
    group_parser.add_argument("--threshold", type=float, default=None, help="Similarity threshold")

    metrics_parser = subparsers.add_parser("record-metrics", help="Record daily metrics")
    metrics_parser.add_argument("--date", default=None, help="Metric date (YYYY-MM-DD), default today")

    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config, args.log_level)

    try:
        orchestrator = MatchOrchestrator.from_config(config)

        if args.command == "resolve":
            result = orchestrator.resolve(args.name, args.address, args.region,
                                          source_table=args.source_table, lot_address=args.lot_address)
            _print_json(result.to_dict())

        elif args.command == "search":
            results = orchestrator.search(args.name, args.region, args.limit)
            _print_json([c.to_dict() for c in results])

        elif args.command == "resolve-batch":
            input_df = pd.read_csv(args.input)
            results_df = orchestrator.resolve_batch(input_df, args.name_column, args.address_column,
                                                    args.region_column, args.source_table)
            results_df.to_csv(args.output, index=False)

            print("\n" + "=" * 50)
            print("BATCH RESOLUTION SUMMARY")
            print("=" * 50)
            print(f"Input Records: {len(results_df):,}")
            print(f"Resolved: {int(results_df['success'].sum()):,}")
            print(f"Results: {args.output}")
            print("=" * 50)

        elif args.command == "group":
            scope = {}
            if args.region:
                scope["region"] = args.region
            if args.sub_region:
                scope["sub_region"] = args.sub_region
            result = orchestrator.group(scope, args.threshold)
            _print_json({
                "groups": [g.to_dict() for g in result.groups],
                "ungrouped": [m.to_dict() for m in result.ungrouped],
                "stats": result.stats,
            })

        elif args.command == "record-metrics":
            metric_date = datetime.strptime(args.date, "%Y-%m-%d").date() if args.date else date.today()
            snapshot = orchestrator.record_metrics(metric_date)
            if snapshot is None:
                sys.exit(1)
            _print_json(snapshot.to_dict())

    except RegistryMatchError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(2 if e.retryable else 1)


if __name__ == "__main__":
    main()
