"""
Normalization rule definitions for RegistryMatch.

Each stored rule type maps to its own dataclass carrying only the parameters
that type understands. The text normalizer dispatches on the class.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..errors import RuleDefinitionError

logger = logging.getLogger(__name__)

# Spelled-out Korean numerals, Sino-Korean and native forms
DEFAULT_NUMERALS = {
    "영": "0", "공": "0",
    "일": "1", "하나": "1",
    "이": "2", "둘": "2",
    "삼": "3", "셋": "3",
    "사": "4", "넷": "4",
    "오": "5", "다섯": "5",
    "육": "6", "여섯": "6",
    "칠": "7", "일곱": "7",
    "팔": "8", "여덟": "8",
    "구": "9", "아홉": "9",
}


@dataclass(frozen=True)
class NormalizationRule:
    """Fields shared by every rule type."""

    rule_id: int
    name: str
    priority: int
    active: bool

    rule_type = "base"


@dataclass(frozen=True)
class SuffixRemovalRule(NormalizationRule):
    patterns: Tuple[str, ...] = ()

    rule_type = "suffix_removal"


@dataclass(frozen=True)
class RegionExpansionRule(NormalizationRule):
    # The abbreviation mapping comes from the administrative region reference,
    # never from the rule row itself.

    rule_type = "region_expansion"


@dataclass(frozen=True)
class WhitespaceNormalizationRule(NormalizationRule):
    rule_type = "whitespace_normalize"


@dataclass(frozen=True)
class SpecialCharacterRemovalRule(NormalizationRule):
    exclude_chars: Tuple[str, ...] = ()

    rule_type = "special_char_removal"


@dataclass(frozen=True)
class NumeralNormalizationRule(NormalizationRule):
    numerals: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_NUMERALS), hash=False)

    rule_type = "numeral_normalize"


@dataclass(frozen=True)
class AddressStandardizationRule(NormalizationRule):
    rule_type = "address_standardize"


@dataclass(frozen=True)
class CompositeRule(NormalizationRule):
    rule_type = "composite"


RULE_TYPES = {
    cls.rule_type: cls for cls in (
        SuffixRemovalRule,
        RegionExpansionRule,
        WhitespaceNormalizationRule,
        SpecialCharacterRemovalRule,
        NumeralNormalizationRule,
        AddressStandardizationRule,
        CompositeRule,
    )
}


def _string_list(spec: Dict[str, Any], key: str, rule_name: str) -> Tuple[str, ...]:
    values = spec.get(key, [])
    if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
        raise RuleDefinitionError(f"Rule '{rule_name}': {key} must be a list of strings")
    return tuple(v for v in values if v)


def parse_rule(row: Dict[str, Any]) -> NormalizationRule:
    """
    Build a typed rule from a stored rule row.

    Args:
        row: Mapping with rule_id, rule_name, rule_type, rule_spec, priority
             and is_active. rule_spec may be a dict or JSON text.

    Returns:
        Rule variant matching the row's type

    Raises:
        RuleDefinitionError: Unknown type or malformed parameters
    """
    rule_type = row.get("rule_type")
    rule_name = row.get("rule_name") or f"rule_{row.get('rule_id')}"

    if rule_type not in RULE_TYPES:
        raise RuleDefinitionError(f"Rule '{rule_name}': unknown rule type '{rule_type}'")

    spec = row.get("rule_spec") or {}
    if isinstance(spec, str):
        try:
            spec = json.loads(spec) if spec.strip() else {}
        except json.JSONDecodeError as e:
            raise RuleDefinitionError(f"Rule '{rule_name}': rule_spec is not valid JSON ({e})")
    if not isinstance(spec, dict):
        raise RuleDefinitionError(f"Rule '{rule_name}': rule_spec must be an object")

    try:
        common = {
            "rule_id": int(row["rule_id"]),
            "name": rule_name,
            "priority": int(row.get("priority", 0)),
            "active": bool(row.get("is_active", True)),
        }
    except (KeyError, TypeError, ValueError) as e:
        raise RuleDefinitionError(f"Rule '{rule_name}': invalid id or priority ({e})")

    if rule_type == "suffix_removal":
        return SuffixRemovalRule(patterns=_string_list(spec, "patterns", rule_name), **common)

    if rule_type == "special_char_removal":
        return SpecialCharacterRemovalRule(exclude_chars=_string_list(spec, "exclude_chars", rule_name), **common)

    if rule_type == "numeral_normalize":
        numerals = spec.get("numerals")
        if numerals is None:
            return NumeralNormalizationRule(**common)
        if not isinstance(numerals, dict):
            raise RuleDefinitionError(f"Rule '{rule_name}': numerals must be a mapping")
        return NumeralNormalizationRule(numerals={str(k): str(v) for k, v in numerals.items()}, **common)

    return RULE_TYPES[rule_type](**common)


def parse_rules(rows: List[Dict[str, Any]]) -> List[NormalizationRule]:
    """
    Parse rule rows, keeping active rules in descending priority order.

    Malformed rows are logged and skipped.

    Args:
        rows: Stored rule rows

    Returns:
        Active rules sorted by priority (highest first), ties by rule id
    """
    rules = []
    for row in rows:
        try:
            rule = parse_rule(row)
        except RuleDefinitionError as e:
            logger.warning(f"Skipping normalization rule: {e}")
            continue
        if rule.active:
            rules.append(rule)

    rules.sort(key=lambda r: (-r.priority, r.rule_id))
    return rules
