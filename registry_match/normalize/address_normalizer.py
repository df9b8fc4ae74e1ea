"""
Address normalization for RegistryMatch.

Standardizes road and lot addresses using the administrative region mapping
held by the RuleStore, and produces a content hash for exact-address
deduplication.
"""

import re
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .rule_store import RuleStore
from .text_normalizer import expand_regions, collapse_whitespace
from ..match.similarity import edit_similarity

logger = logging.getLogger(__name__)

HASH_DELIMITER = "||"
LOT_MARKER_PATTERN = re.compile(r"\s*번지$")
NOISE_PATTERN = re.compile(r"[^\w\s\-().]|_")


@dataclass(frozen=True)
class AddressNormalizationResult:
    road_address: str
    lot_address: str
    address_hash: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "road_address": self.road_address,
            "lot_address": self.lot_address,
            "address_hash": self.address_hash,
        }


def has_address(road_address: Optional[str], lot_address: Optional[str]) -> bool:
    """True if either address component carries any text."""
    return bool((road_address or "").strip() or (lot_address or "").strip())


def generate_address_hash(road_address: str, lot_address: str, region_code: Optional[str] = None) -> str:
    """
    SHA-256 over the normalized road address, lot address and region code.

    Empty components are kept as empty strings, so the hash reflects which
    fields were present.

    Args:
        road_address: Normalized road address
        lot_address: Normalized lot address
        region_code: Region code

    Returns:
        64-character hex digest
    """
    hash_input = HASH_DELIMITER.join([
        (road_address or "").lower().strip(),
        (lot_address or "").lower().strip(),
        (region_code or "").lower().strip(),
    ])
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


class AddressNormalizer:
    """
    Normalizes Korean road (도로명) and lot (지번) addresses.

    Region abbreviations are expanded with the same mapping the text
    normalizer uses, so "서울 강서구" and "서울특별시 강서구" converge.
    """

    def __init__(self, rule_store: RuleStore):
        """
        Initialize address normalizer.

        Args:
            rule_store: Source of the administrative region mapping
        """
        self.rule_store = rule_store

        logger.info("Initialized AddressNormalizer")

    def normalize_road_address(self, address: Optional[str], mappings: Optional[Dict[str, str]] = None) -> str:
        """
        Normalize a road address.

        Args:
            address: Raw road address
            mappings: Region mapping; read from the rule store when omitted

        Returns:
            Normalized road address
        """
        if not address or not isinstance(address, str):
            return ""

        if mappings is None:
            mappings = self.rule_store.region_mappings()

        normalized = collapse_whitespace(address)
        normalized = expand_regions(normalized, mappings)
        normalized = NOISE_PATTERN.sub("", normalized)
        return collapse_whitespace(normalized)

    def normalize_lot_address(self, address: Optional[str], mappings: Optional[Dict[str, str]] = None) -> str:
        """
        Normalize a lot address, dropping a trailing "번지" marker.

        Args:
            address: Raw lot address
            mappings: Region mapping; read from the rule store when omitted

        Returns:
            Normalized lot address
        """
        normalized = self.normalize_road_address(address, mappings)
        return LOT_MARKER_PATTERN.sub("", normalized).strip()

    def normalize(self, road_address: Optional[str] = None,
                  lot_address: Optional[str] = None,
                  region_code: Optional[str] = None,
                  mappings: Optional[Dict[str, str]] = None) -> AddressNormalizationResult:
        """
        Normalize a complete address and compute its hash.

        Args:
            road_address: Road address
            lot_address: Lot address
            region_code: Region code included in the hash
            mappings: Region mapping of the caller's rule snapshot; read
                      from the rule store when omitted

        Returns:
            Normalized components and address hash
        """
        if mappings is None:
            mappings = self.rule_store.region_mappings()

        normalized_road = self.normalize_road_address(road_address, mappings)
        normalized_lot = self.normalize_lot_address(lot_address, mappings)

        return AddressNormalizationResult(
            road_address=normalized_road,
            lot_address=normalized_lot,
            address_hash=generate_address_hash(normalized_road, normalized_lot, region_code)
        )

    def similarity(self, address1: str, address2: str) -> int:
        """
        Fuzzy similarity between two address strings.

        Args:
            address1: First address
            address2: Second address

        Returns:
            Edit-distance similarity, 0-100
        """
        return edit_similarity(address1, address2)
