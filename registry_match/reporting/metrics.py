"""
Daily metrics aggregation for RegistryMatch.

Summarizes one calendar day of validation log entries into a metrics
snapshot and builds period reports over snapshots and signal data.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Dict, Optional
import pandas as pd

from ..audit.audit_logger import AuditLogger
from ..match.score_engine import Recommendation

logger = logging.getLogger(__name__)

METRIC_TYPES = ("all", "summary", "daily", "signals", "coverage")


@dataclass(frozen=True)
class MetricsSnapshot:
    metric_date: str
    total_registry_entries: int
    total_aliases: int
    matched_count: int
    unmatched_count: int
    match_success_rate: float
    auto_recommend_success_rate: float
    search_hit_rate: float
    address_match_rate: float
    validation_runs: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _signal_value(breakdown: Any, signal_name: str) -> Optional[float]:
    if not isinstance(breakdown, str) or not breakdown:
        return None
    for signal in json.loads(breakdown):
        if signal.get("signal_name") == signal_name:
            return signal.get("signal_value")
    return None


def _rate(count: int, total: int) -> float:
    return count / total if total > 0 else 0.0


class MetricsAggregator:
    """
    Computes MetricsSnapshot rows from the validation log.

    Recording is a side channel: failures are logged and never raised.
    """

    def __init__(self, audit_logger: AuditLogger, registry_store):
        """
        Initialize metrics aggregator.

        Args:
            audit_logger: Validation log and snapshot store
            registry_store: Registry store for entry and alias totals
        """
        self.audit_logger = audit_logger
        self.registry_store = registry_store

        logger.info("Initialized MetricsAggregator")

    def compute_snapshot(self, metric_date: date) -> MetricsSnapshot:
        """
        Compute the metrics for one day without saving them.

        Args:
            metric_date: Calendar day

        Returns:
            Metrics snapshot
        """
        logs_df = self.audit_logger.get_logs_for_date(metric_date)
        total = len(logs_df)

        if total > 0:
            matched_count = int(logs_df["success"].astype(bool).sum())
            auto_count = int((logs_df["recommendation"] == Recommendation.AUTO_MATCH).sum())
            hit_count = int((logs_df["candidate_count"].fillna(0) > 0).sum())
            address_values = logs_df["signal_breakdown"].apply(lambda b: _signal_value(b, "address_match"))
            address_count = int((address_values == 100).sum())
            validation_runs = int(logs_df["run_id"].nunique())
        else:
            matched_count = auto_count = hit_count = address_count = validation_runs = 0

        return MetricsSnapshot(
            metric_date=metric_date.isoformat(),
            total_registry_entries=self.registry_store.count_active_entries(),
            total_aliases=self.registry_store.count_aliases(),
            matched_count=matched_count,
            unmatched_count=total - matched_count,
            match_success_rate=_rate(matched_count, total),
            auto_recommend_success_rate=_rate(auto_count, total),
            search_hit_rate=_rate(hit_count, total),
            address_match_rate=_rate(address_count, total),
            validation_runs=validation_runs
        )

    def record_metrics(self, metric_date: date) -> Optional[MetricsSnapshot]:
        """
        Compute and write (or overwrite) the snapshot for a day.

        Args:
            metric_date: Calendar day

        Returns:
            The saved snapshot, or None when computing or writing failed
        """
        try:
            snapshot = self.compute_snapshot(metric_date)
            self.audit_logger.save_metrics_snapshot(snapshot)
        except Exception as e:
            logger.error(f"Failed to record metrics for {metric_date}: {e}")
            return None

        logger.info(f"Recorded metrics for {metric_date}: {snapshot.matched_count} matched, "
                    f"{snapshot.unmatched_count} unmatched ({snapshot.match_success_rate:.1%} success)")
        return snapshot

    def get_metrics_report(self, start_date: date, end_date: date,
                           metric_type: str = "all") -> Dict[str, Any]:
        """
        Build a metrics report for a period.

        Args:
            start_date: First day of the period
            end_date: Last day of the period (inclusive)
            metric_type: all, summary, daily, signals or coverage

        Returns:
            Dictionary with the period and the requested sections
        """
        if metric_type not in METRIC_TYPES:
            raise ValueError(f"metric_type must be one of {METRIC_TYPES}")

        report: Dict[str, Any] = {
            "period": {"start": start_date.isoformat(), "end": end_date.isoformat()}
        }

        logs_df = self.audit_logger.get_logs_between(start_date, end_date)

        if metric_type in ("all", "summary"):
            total = len(logs_df)
            success = int(logs_df["success"].astype(bool).sum()) if total else 0
            report["summary"] = {
                "total_validations": total,
                "successful": success,
                "failed": total - success,
                "success_rate": round(_rate(success, total) * 100, 2),
            }

        if metric_type in ("all", "daily"):
            snapshots = self.audit_logger.get_metrics_snapshots(start_date, end_date)
            report["daily"] = snapshots.to_dict("records")

        if metric_type in ("all", "signals"):
            report["signals"] = self._analyze_signals(logs_df)

        if metric_type in ("all", "coverage"):
            report["coverage"] = self.registry_store.coverage_by_region().to_dict("records")

        return report

    def _analyze_signals(self, logs_df: pd.DataFrame) -> Dict[str, Dict[str, float]]:
        """Per-signal count, average contribution and max value across successful logs."""
        rows = []
        if not logs_df.empty:
            successful = logs_df[logs_df["success"].astype(bool)]
            for breakdown in successful["signal_breakdown"]:
                if isinstance(breakdown, str) and breakdown:
                    rows.extend(json.loads(breakdown))

        if not rows:
            return {}

        signals_df = pd.DataFrame(rows)
        grouped = signals_df.groupby("signal_name")

        analysis = {}
        for signal_name, group in grouped:
            analysis[signal_name] = {
                "count": int(len(group)),
                "avg_contribution": round(float(group["contribution"].mean()), 2),
                "max_value": float(group["signal_value"].max()),
            }
        return analysis
