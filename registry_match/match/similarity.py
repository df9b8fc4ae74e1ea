"""
String similarity primitives for RegistryMatch.

edit_similarity is the authoritative measure used for scoring and grouping.
quick_similarity is a cheap token heuristic used only to pre-filter
candidates; it must never be used to rank final results.
"""

import math
from Levenshtein import distance as levenshtein_distance


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up."""
    return int(math.floor(value + 0.5))


def edit_similarity(str1: str, str2: str) -> int:
    """
    Normalized edit-distance similarity on a 0-100 scale.

    Args:
        str1: First string
        str2: Second string

    Returns:
        round((1 - levenshtein / max_length) * 100); 100 for equal strings,
        0 when exactly one side is empty
    """
    s1 = (str1 or "").lower().strip()
    s2 = (str2 or "").lower().strip()

    if s1 == s2:
        return 100
    if not s1 or not s2:
        return 0

    distance = levenshtein_distance(s1, s2)
    max_length = max(len(s1), len(s2))

    return round_half_up((1 - distance / max_length) * 100)


def quick_similarity(name1: str, name2: str) -> int:
    """
    Token-overlap heuristic for candidate pre-filtering.

    - exact match: 100
    - one name contains the other: 80
    - otherwise: round(100 * common_tokens / max(token counts))
    """
    n1 = (name1 or "").lower().strip()
    n2 = (name2 or "").lower().strip()

    if not n1 or not n2:
        return 0
    if n1 == n2:
        return 100
    if n1 in n2 or n2 in n1:
        return 80

    tokens1 = n1.split()
    tokens2 = n2.split()
    common_tokens = len([t for t in tokens1 if t in tokens2])

    if common_tokens == 0:
        return 0

    return round_half_up(100 * common_tokens / max(len(tokens1), len(tokens2)))
