"""
Institution name normalization for RegistryMatch.

Applies the active normalization rules, highest priority first, to a raw
institution name and records which rules changed it.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import pandas as pd

from .rule_store import RuleStore, RuleSnapshot
from .rules import (
    NormalizationRule,
    SuffixRemovalRule,
    RegionExpansionRule,
    WhitespaceNormalizationRule,
    SpecialCharacterRemovalRule,
    NumeralNormalizationRule,
    AddressStandardizationRule,
    CompositeRule,
)

logger = logging.getLogger(__name__)

WHITESPACE_PATTERN = re.compile(r"\s+")
FULL_WIDTH_DIGITS = {chr(0xFF10 + i): str(i) for i in range(10)}


@dataclass(frozen=True)
class AppliedRule:
    """Trace entry for a rule that changed the text."""

    rule_id: int
    rule_name: str
    rule_type: str
    before: str
    after: str

    def to_dict(self) -> Dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type,
            "before": self.before,
            "after": self.after,
        }


@dataclass(frozen=True)
class NormalizationResult:
    normalized: str
    applied_rules: Tuple[AppliedRule, ...] = field(default_factory=tuple)

    @property
    def applied_rule_names(self) -> List[str]:
        return [rule.rule_name for rule in self.applied_rules]


def _whole_word_pattern(words: List[str]) -> Optional[re.Pattern]:
    if not words:
        return None
    # Longest first so "서울특별시" wins over "서울"
    ordered = sorted(set(words), key=lambda w: (-len(w), w))
    return re.compile(r"(?<!\w)(?:" + "|".join(map(re.escape, ordered)) + r")(?!\w)")


def expand_regions(text: str, mappings: Dict[str, str]) -> str:
    """
    Replace whole-word region abbreviations with their canonical names.

    Args:
        text: Input text
        mappings: Abbreviation to canonical name

    Returns:
        Text with abbreviations expanded
    """
    pattern = _whole_word_pattern(list(mappings))
    if pattern is None or not text:
        return text
    return pattern.sub(lambda m: mappings[m.group(0)], text)


def collapse_whitespace(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def remove_suffixes(text: str, patterns: Tuple[str, ...]) -> str:
    """
    Strip configured suffixes from the end of the text.

    Stripping repeats until no suffix remains, so stacked suffixes such as
    "보건소센터" are fully removed in one call.
    """
    result = text
    changed = True
    while changed and result:
        changed = False
        for pattern in patterns:
            stripped = result.rstrip()
            if stripped.endswith(pattern) and len(stripped) > len(pattern):
                result = stripped[:-len(pattern)].rstrip()
                changed = True
    return result


def remove_special_characters(text: str, exclude_chars: Tuple[str, ...] = ()) -> str:
    allowed = "".join(re.escape(c) for c in exclude_chars)
    return re.sub(rf"[^\w\s{allowed}]|_", lambda m: m.group(0) if m.group(0) in exclude_chars else "", text)


def normalize_numerals(text: str, numerals: Dict[str, str]) -> str:
    """
    Convert whole-word spelled-out numerals and full-width digits to ASCII digits.
    """
    result = "".join(FULL_WIDTH_DIGITS.get(ch, ch) for ch in text)
    pattern = _whole_word_pattern(list(numerals))
    if pattern is None:
        return result
    return pattern.sub(lambda m: numerals[m.group(0)], result)


class TextNormalizer:
    """
    Normalizes institution names with the rule set held by a RuleStore.

    The rule list is applied as repeated passes until a pass leaves the text
    unchanged, so normalizing an already normalized name is a no-op.
    """

    def __init__(self, rule_store: RuleStore, max_passes: int = 4):
        """
        Initialize text normalizer.

        Args:
            rule_store: Source of the rule snapshot
            max_passes: Upper bound on rule passes per call
        """
        self.rule_store = rule_store
        self.max_passes = max(1, max_passes)

        logger.info("Initialized TextNormalizer")

    def normalize(self, raw_name: str, snapshot: Optional[RuleSnapshot] = None) -> NormalizationResult:
        """
        Normalize a single institution name.

        Args:
            raw_name: Raw institution name
            snapshot: Rule snapshot to use; taken from the store when omitted

        Returns:
            Normalized name and the rules that changed it, in the order they
            first fired
        """
        if raw_name is None or not isinstance(raw_name, str):
            return NormalizationResult("")

        if snapshot is None:
            snapshot = self.rule_store.snapshot()

        result = raw_name
        applied: Dict[int, AppliedRule] = {}

        for _ in range(self.max_passes):
            pass_start = result
            for rule in snapshot.rules:
                before = result
                after = self._apply_rule(rule, before, snapshot)

                if isinstance(rule, CompositeRule):
                    fired = after != pass_start
                else:
                    fired = after != before

                if fired and rule.rule_id not in applied:
                    applied[rule.rule_id] = AppliedRule(
                        rule_id=rule.rule_id,
                        rule_name=rule.name,
                        rule_type=rule.rule_type,
                        before=pass_start if isinstance(rule, CompositeRule) else before,
                        after=after
                    )
                result = after

            if result == pass_start:
                break
        else:
            logger.warning(f"Normalization of '{raw_name}' did not settle after {self.max_passes} passes")

        return NormalizationResult(result, tuple(applied.values()))

    def _apply_rule(self, rule: NormalizationRule, text: str, snapshot: RuleSnapshot) -> str:
        if isinstance(rule, SuffixRemovalRule):
            return remove_suffixes(text, rule.patterns)
        if isinstance(rule, RegionExpansionRule):
            return expand_regions(text, snapshot.region_mappings)
        if isinstance(rule, WhitespaceNormalizationRule):
            return collapse_whitespace(text)
        if isinstance(rule, SpecialCharacterRemovalRule):
            return remove_special_characters(text, rule.exclude_chars)
        if isinstance(rule, NumeralNormalizationRule):
            return normalize_numerals(text, rule.numerals)
        if isinstance(rule, (AddressStandardizationRule, CompositeRule)):
            # Address standardization belongs to the AddressNormalizer
            return text

        logger.warning(f"No transformation for rule type {type(rule).__name__}")
        return text

    def normalize_name(self, raw_name: str) -> str:
        """Normalize a name and return only the normalized text."""
        return self.normalize(raw_name).normalized

    def normalize_dataframe(self, df: pd.DataFrame, name_column: str = "source_name") -> pd.DataFrame:
        """
        Normalize names in a DataFrame.

        Args:
            df: Input DataFrame
            name_column: Column with raw institution names

        Returns:
            DataFrame with <name_column>_norm and <name_column>_rules columns
        """
        result_df = df.copy()
        snapshot = self.rule_store.snapshot()

        results = df[name_column].apply(lambda name: self.normalize(name if isinstance(name, str) else None, snapshot))
        result_df[f"{name_column}_norm"] = results.apply(lambda r: r.normalized)
        result_df[f"{name_column}_rules"] = results.apply(lambda r: r.applied_rule_names)

        logger.info(f"Normalized names for {len(result_df)} records")
        return result_df
