"""
Near-duplicate institution grouping for RegistryMatch.

Clusters institution records within a scope by name similarity, takes the
transitive closure of similar pairs as groups, and picks one master record
per group through an ordered selector chain.
"""

import re
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from Levenshtein import distance as levenshtein_distance

from ..errors import InputValidationError

logger = logging.getLogger(__name__)

DEFAULT_HEADQUARTERS_KEYWORDS = ["본원", "본점", "본사", "본부", "본관"]
DEFAULT_PROTECTED_PATTERNS = [r"구급\s*차"]

# Ordered (pattern, replacement) pairs unifying common spellings
GROUPING_KEY_REPLACEMENTS = [
    (re.compile(r"\(주\)|주\)|㈜|주식회사"), ""),
    (re.compile(r"\s+"), ""),
    (re.compile(r"[()（）\[\]]"), ""),
    (re.compile(r"[·・,，]"), ""),
    (re.compile(r"대학교병원|대학병원|대병원"), "대병원"),
    (re.compile(r"센타"), "센터"),
    (re.compile(r"보건지소"), "보건소"),
    (re.compile(r"클리닉"), "의원"),
]


@dataclass(frozen=True)
class GroupMember:
    key: str
    name: str
    region: Optional[str] = None
    sub_region: Optional[str] = None
    division: Optional[str] = None
    sub_division: Optional[str] = None
    address: Optional[str] = None
    equipment_count: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    pinned_master: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GroupMember":
        """Build a member from a stored institution row."""
        return cls(
            key=str(row["institution_id"]),
            name=row.get("name") or "",
            region=row.get("region"),
            sub_region=row.get("sub_region"),
            division=row.get("division"),
            sub_division=row.get("sub_division"),
            address=row.get("address"),
            equipment_count=int(row.get("equipment_count") or 0),
            matched_count=int(row.get("matched_count") or 0),
            unmatched_count=int(row.get("unmatched_count") or 0),
            pinned_master=bool(row.get("is_master"))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "region": self.region,
            "sub_region": self.sub_region,
            "division": self.division,
            "sub_division": self.sub_division,
            "address": self.address,
            "equipment_count": self.equipment_count,
            "matched_count": self.matched_count,
            "unmatched_count": self.unmatched_count,
            "pinned_master": self.pinned_master,
        }


@dataclass(frozen=True)
class InstitutionGroup:
    group_id: str
    master: GroupMember
    members: Tuple[GroupMember, ...]
    similarity: float
    confidence: str
    total_equipment: int
    matched_count: int
    unmatched_count: int
    needs_warning: bool = False
    warning_members: Tuple[GroupMember, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "master": self.master.to_dict(),
            "members": [m.to_dict() for m in self.members],
            "similarity": self.similarity,
            "confidence": self.confidence,
            "total_equipment": self.total_equipment,
            "matched_count": self.matched_count,
            "unmatched_count": self.unmatched_count,
            "needs_warning": self.needs_warning,
            "warning_members": [m.key for m in self.warning_members],
        }


@dataclass(frozen=True)
class GroupingResult:
    groups: Tuple[InstitutionGroup, ...]
    ungrouped: Tuple[GroupMember, ...]
    stats: Dict[str, Any] = field(default_factory=dict, hash=False)


def grouping_key(name: str) -> str:
    """Comparison key for a name: lower-cased, unspaced, spellings unified."""
    key = (name or "").lower()
    for pattern, replacement in GROUPING_KEY_REPLACEMENTS:
        key = pattern.sub(replacement, key)
    return key


def name_similarity(key1: str, key2: str) -> float:
    """Edit-distance similarity between two grouping keys, 0.0 to 1.0."""
    max_length = max(len(key1), len(key2))
    if max_length == 0:
        return 0.0
    return 1 - levenshtein_distance(key1, key2) / max_length


# Master selectors: each returns a member or None to defer to the next one

def select_pinned(members: Sequence[GroupMember]) -> Optional[GroupMember]:
    for member in members:
        if member.pinned_master:
            return member
    return None


def select_most_equipment(members: Sequence[GroupMember]) -> Optional[GroupMember]:
    top = max(members, key=lambda m: m.equipment_count)
    if top.equipment_count > 1:
        # max() keeps the first of equal maxima
        return top
    return None


def select_headquarters_division(members: Sequence[GroupMember],
                                 keywords: Sequence[str]) -> Optional[GroupMember]:
    for member in members:
        sub_division = member.sub_division or ""
        if any(keyword in sub_division for keyword in keywords):
            return member
    return None


def shortest_division_members(members: Sequence[GroupMember]) -> List[GroupMember]:
    """Members whose sub-unit field is the shortest (empty counts as length 0), in scope order."""
    lengths = [len((m.sub_division or "").strip()) for m in members]
    shortest = min(lengths)
    return [m for m, length in zip(members, lengths) if length == shortest]


def select_headquarters_name(members: Sequence[GroupMember],
                             keywords: Sequence[str]) -> Optional[GroupMember]:
    for member in members:
        if any(keyword in member.name for keyword in keywords):
            return member
    return None


def select_first(members: Sequence[GroupMember]) -> Optional[GroupMember]:
    return members[0] if members else None


def calculate_group_stats(groups: Sequence[InstitutionGroup],
                          ungrouped: Sequence[GroupMember]) -> Dict[str, Any]:
    """
    Summary statistics for a grouping run.

    Args:
        groups: Groups found
        ungrouped: Records without a similar partner

    Returns:
        Dictionary with institution, group and equipment totals
    """
    grouped_institutions = sum(len(g.members) for g in groups)
    average_group_size = grouped_institutions / len(groups) if groups else 0

    return {
        "total_institutions": grouped_institutions + len(ungrouped),
        "grouped_institutions": grouped_institutions,
        "ungrouped_institutions": len(ungrouped),
        "group_count": len(groups),
        "average_group_size": round(average_group_size, 1),
        "potential_duplicates": grouped_institutions - len(groups),
        "equipment_in_groups": sum(g.total_equipment for g in groups),
        "equipment_in_ungrouped": sum(m.equipment_count for m in ungrouped),
        "groups_needing_warning": len([g for g in groups if g.needs_warning]),
    }


class GroupingEngine:
    """
    Groups near-duplicate institution records under one master record.

    Similar pairs are joined into connected components, so A~B and B~C put
    A, B and C in one group even when A and C alone fall below threshold.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize grouping engine.

        Args:
            config: Grouping configuration with similarity_threshold,
                    headquarters_keywords, protected_patterns and confidence
        """
        config = config or {}
        self.similarity_threshold = config.get("similarity_threshold", 0.85)
        self.headquarters_keywords = config.get("headquarters_keywords", DEFAULT_HEADQUARTERS_KEYWORDS)
        self.protected_patterns = [
            re.compile(pattern) for pattern in config.get("protected_patterns", DEFAULT_PROTECTED_PATTERNS)
        ]

        confidence = config.get("confidence", {})
        self.high_confidence = confidence.get("high", 0.95)
        self.medium_confidence = confidence.get("medium", 0.90)

        self.master_selectors: List[Callable[[Sequence[GroupMember]], Optional[GroupMember]]] = [
            select_pinned,
            select_most_equipment,
            partial(select_headquarters_division, keywords=self.headquarters_keywords),
        ]
        # Applied only among the members sharing the shortest sub-unit
        self.tie_breakers: List[Callable[[Sequence[GroupMember]], Optional[GroupMember]]] = [
            partial(select_headquarters_name, keywords=self.headquarters_keywords),
            select_first,
        ]

        logger.info(f"Initialized GroupingEngine with threshold {self.similarity_threshold}")

    def group(self, members: Sequence[GroupMember],
              similarity_threshold: Optional[float] = None) -> GroupingResult:
        """
        Group members by name similarity.

        Args:
            members: Records in scope order
            similarity_threshold: Minimum pair similarity in (0, 1]

        Returns:
            Groups sorted by total equipment (largest first), ungrouped
            records in scope order, and statistics

        Raises:
            InputValidationError: Threshold outside (0, 1]
        """
        threshold = self.similarity_threshold if similarity_threshold is None else similarity_threshold
        if not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
            raise InputValidationError(f"similarity_threshold must be in (0, 1], got {threshold}")

        members = list(members)
        keys = [grouping_key(m.name) for m in members]

        # Build adjacency list over member positions
        adjacency = defaultdict(set)
        edge_similarity: Dict[Tuple[int, int], float] = {}

        for i in range(len(members)):
            for j in range(i + 1, len(members)):
                similarity = name_similarity(keys[i], keys[j])
                if similarity >= threshold:
                    adjacency[i].add(j)
                    adjacency[j].add(i)
                    edge_similarity[(i, j)] = similarity

        components = self._connected_components(adjacency)

        groups = []
        grouped_positions = set()
        for component in components:
            grouped_positions.update(component)
            similarities = [s for (i, j), s in edge_similarity.items() if i in component and j in component]
            groups.append(self._build_group([members[i] for i in component], similarities))

        groups.sort(key=lambda g: -g.total_equipment)
        groups = [
            replace(g, group_id=f"group_{index}")
            for index, g in enumerate(groups, start=1)
        ]

        ungrouped = tuple(m for i, m in enumerate(members) if i not in grouped_positions)
        stats = calculate_group_stats(groups, ungrouped)

        logger.info(f"Grouped {stats['grouped_institutions']} of {len(members)} institutions "
                    f"into {len(groups)} groups ({stats['groups_needing_warning']} need confirmation)")

        return GroupingResult(groups=tuple(groups), ungrouped=ungrouped, stats=stats)

    def _connected_components(self, adjacency: Dict[int, set]) -> List[List[int]]:
        """Connected components by BFS, each sorted by scope position."""
        visited = set()
        components = []

        for start in sorted(adjacency):
            if start in visited:
                continue

            component = []
            queue = [start]
            visited.add(start)

            while queue:
                current = queue.pop(0)
                component.append(current)
                for neighbor in sorted(adjacency[current]):
                    if neighbor not in visited:
                        visited.add(neighbor)
                        queue.append(neighbor)

            components.append(sorted(component))

        return components

    def select_master(self, members: Sequence[GroupMember]) -> GroupMember:
        """
        Pick the group's master record.

        The selectors run in order until one decides. After that the members
        with the shortest sub-unit are kept. If more than one is left, the
        tie breakers pick among those members only.
        """
        for selector in self.master_selectors:
            master = selector(members)
            if master is not None:
                return master

        shortest = shortest_division_members(members)
        if len(shortest) == 1:
            return shortest[0]

        for tie_breaker in self.tie_breakers:
            master = tie_breaker(shortest)
            if master is not None:
                return master
        return shortest[0]

    def is_protected(self, member: GroupMember) -> bool:
        sub_division = member.sub_division or ""
        return any(pattern.search(sub_division) for pattern in self.protected_patterns)

    def _build_group(self, members: List[GroupMember], similarities: List[float]) -> InstitutionGroup:
        average_similarity = sum(similarities) / len(similarities) if similarities else 1.0

        if average_similarity >= self.high_confidence:
            confidence = "high"
        elif average_similarity >= self.medium_confidence:
            confidence = "medium"
        else:
            confidence = "low"

        warning_members = tuple(m for m in members if self.is_protected(m))

        return InstitutionGroup(
            group_id="",
            master=self.select_master(members),
            members=tuple(members),
            similarity=round(average_similarity, 4),
            confidence=confidence,
            total_equipment=sum(m.equipment_count for m in members),
            matched_count=sum(m.matched_count for m in members),
            unmatched_count=sum(m.unmatched_count for m in members),
            needs_warning=bool(warning_members),
            warning_members=warning_members
        )
