"""
Unit tests for normalization modules.
"""

import pytest
import pandas as pd
import sys
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from registry_match.errors import DependencyError, RuleDefinitionError
from registry_match.normalize.rules import (
    parse_rule,
    parse_rules,
    SuffixRemovalRule,
    SpecialCharacterRemovalRule,
    NumeralNormalizationRule,
    CompositeRule,
    DEFAULT_NUMERALS,
)
from registry_match.normalize.rule_store import RuleStore, StaticRuleSource, ReadThroughCache
from registry_match.normalize.text_normalizer import (
    TextNormalizer,
    remove_suffixes,
    remove_special_characters,
    normalize_numerals,
    expand_regions,
)
from registry_match.normalize.address_normalizer import (
    AddressNormalizer,
    generate_address_hash,
    has_address,
)


REGION_MAPPINGS = {"서울": "서울특별시", "부산": "부산광역시"}


def default_rule_rows():
    return [
        {"rule_id": 1, "rule_name": "지역명 확장", "rule_type": "region_expansion",
         "rule_spec": {}, "priority": 100, "is_active": True},
        {"rule_id": 2, "rule_name": "기관 접미사 제거", "rule_type": "suffix_removal",
         "rule_spec": {"patterns": ["보건소", "병원", "센터"]}, "priority": 90, "is_active": True},
        {"rule_id": 3, "rule_name": "특수문자 제거", "rule_type": "special_char_removal",
         "rule_spec": {"exclude_chars": ["-", "_", "/", "·"]}, "priority": 80, "is_active": True},
        {"rule_id": 4, "rule_name": "공백 정리", "rule_type": "whitespace_normalize",
         "rule_spec": {}, "priority": 70, "is_active": True},
        {"rule_id": 5, "rule_name": "주소 표준화", "rule_type": "address_standardize",
         "rule_spec": {}, "priority": 60, "is_active": True},
        {"rule_id": 6, "rule_name": "전체 정규화", "rule_type": "composite",
         "rule_spec": {}, "priority": 0, "is_active": True},
    ]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class CountingSource(StaticRuleSource):
    """Static source that counts loads and can be switched to fail."""

    def __init__(self, rules, region_mappings=None):
        super().__init__(rules, region_mappings)
        self.rule_loads = 0
        self.fail = False

    def load_rules(self):
        if self.fail:
            raise RuntimeError("rule table unavailable")
        self.rule_loads += 1
        return super().load_rules()

    def load_region_mappings(self):
        if self.fail:
            raise RuntimeError("region table unavailable")
        return super().load_region_mappings()


class TestRuleParsing:
    """Test cases for rule definitions."""

    def test_parse_suffix_rule(self):
        """Suffix rules carry their patterns."""
        rule = parse_rule({"rule_id": 7, "rule_name": "suffix", "rule_type": "suffix_removal",
                           "rule_spec": '{"patterns": ["보건소", "병원"]}', "priority": 5, "is_active": 1})
        assert isinstance(rule, SuffixRemovalRule)
        assert rule.patterns == ("보건소", "병원")
        assert rule.priority == 5
        assert rule.rule_type == "suffix_removal"

    def test_parse_special_char_and_numeral_rules(self):
        """Typed parameters for special characters and numerals."""
        special = parse_rule({"rule_id": 1, "rule_name": "s", "rule_type": "special_char_removal",
                              "rule_spec": {"exclude_chars": ["-"]}})
        assert isinstance(special, SpecialCharacterRemovalRule)
        assert special.exclude_chars == ("-",)

        numeral = parse_rule({"rule_id": 2, "rule_name": "n", "rule_type": "numeral_normalize"})
        assert isinstance(numeral, NumeralNormalizationRule)
        assert numeral.numerals == DEFAULT_NUMERALS

        composite = parse_rule({"rule_id": 3, "rule_name": "c", "rule_type": "composite", "rule_spec": ""})
        assert isinstance(composite, CompositeRule)

    def test_parse_rule_errors(self):
        """Unknown types and malformed specs are rejected."""
        with pytest.raises(RuleDefinitionError):
            parse_rule({"rule_id": 1, "rule_name": "x", "rule_type": "translate"})

        with pytest.raises(RuleDefinitionError):
            parse_rule({"rule_id": 1, "rule_name": "x", "rule_type": "suffix_removal",
                        "rule_spec": "{not json"})

        with pytest.raises(RuleDefinitionError):
            parse_rule({"rule_id": 1, "rule_name": "x", "rule_type": "suffix_removal",
                        "rule_spec": {"patterns": "보건소"}})

    def test_parse_rules_order_and_filtering(self):
        """Active rules only, highest priority first, malformed rows skipped."""
        rows = [
            {"rule_id": 3, "rule_name": "low", "rule_type": "whitespace_normalize", "priority": 1},
            {"rule_id": 2, "rule_name": "high", "rule_type": "region_expansion", "priority": 50},
            {"rule_id": 1, "rule_name": "tie", "rule_type": "composite", "priority": 50},
            {"rule_id": 4, "rule_name": "off", "rule_type": "composite", "priority": 99, "is_active": 0},
            {"rule_id": 5, "rule_name": "bad", "rule_type": "unknown", "priority": 99},
        ]
        rules = parse_rules(rows)
        assert [r.name for r in rules] == ["tie", "high", "low"]


class TestRuleStore:
    """Test cases for the rule cache."""

    def setup_method(self):
        """Setup test fixtures."""
        self.clock = FakeClock()
        self.source = CountingSource(default_rule_rows(), REGION_MAPPINGS)
        self.store = RuleStore(self.source, rule_ttl_seconds=3600, region_ttl_seconds=3600, clock=self.clock)

    def test_snapshot_is_cached_within_ttl(self):
        """Repeated reads within the TTL do not reload."""
        first = self.store.snapshot()
        second = self.store.snapshot()
        assert self.source.rule_loads == 1
        assert first.rules == second.rules

    def test_snapshot_reloads_after_ttl(self):
        """Reads after the TTL reload from the source."""
        self.store.snapshot()
        self.clock.now += 3601
        self.store.snapshot()
        assert self.source.rule_loads == 2

    def test_invalidate_forces_reload(self):
        """Invalidation makes the next read reload."""
        self.store.snapshot()
        self.store.invalidate()
        self.store.snapshot()
        assert self.source.rule_loads == 2

    def test_region_mappings_include_canonical_names(self):
        """Canonical names map to themselves."""
        mappings = self.store.snapshot().region_mappings
        assert mappings["서울"] == "서울특별시"
        assert mappings["서울특별시"] == "서울특별시"

    def test_stale_copy_served_on_reload_failure(self):
        """A failed reload falls back to the last good snapshot."""
        good = self.store.snapshot()
        self.source.fail = True
        self.clock.now += 7200
        stale = self.store.snapshot()
        assert stale.rules == good.rules

        self.store.invalidate()
        assert self.store.snapshot().rules == good.rules

    def test_cold_cache_failure_raises(self):
        """A cache that never loaded fails loudly."""
        self.source.fail = True
        with pytest.raises(DependencyError):
            self.store.snapshot()

    def test_read_through_cache_value(self):
        """The cache returns the loaded value with its load time."""
        cache = ReadThroughCache(lambda: "value", 10, "test", clock=self.clock)
        value, loaded_at = cache.get()
        assert value == "value"
        assert loaded_at == self.clock.now


class TestTextNormalizer:
    """Test cases for institution name normalization."""

    def setup_method(self):
        """Setup test fixtures."""
        self.store = RuleStore(StaticRuleSource(default_rule_rows(), REGION_MAPPINGS))
        self.normalizer = TextNormalizer(self.store)

    def test_end_to_end_scenario(self):
        """Region expansion and suffix removal on a health center name."""
        result = self.normalizer.normalize("서울 강남구보건소")
        assert result.normalized == "서울특별시 강남구"
        assert result.applied_rule_names == ["지역명 확장", "기관 접미사 제거", "전체 정규화"]

        suffix_trace = result.applied_rules[1]
        assert suffix_trace.before == "서울특별시 강남구보건소"
        assert suffix_trace.after == "서울특별시 강남구"

    def test_normalize_empty_and_none(self):
        """Missing input normalizes to an empty string."""
        assert self.normalizer.normalize(None).normalized == ""
        assert self.normalizer.normalize(None).applied_rules == ()
        assert self.normalizer.normalize("").normalized == ""
        assert self.normalizer.normalize_name(123) == ""

    def test_unchanged_name_records_no_rules(self):
        """Rules that do not change the text are not recorded."""
        result = self.normalizer.normalize("서울특별시 강남구")
        assert result.normalized == "서울특별시 강남구"
        assert result.applied_rules == ()

    def test_idempotence(self):
        """Normalizing a normalized name changes nothing."""
        samples = [
            "서울 강남구보건소",
            "(주)한국병원!!",
            "  부산   해운대구  보건소센터 ",
            "서울특별시 서울의료원",
            "보건소",
            "서울대학교병원 - 본원",
        ]
        for sample in samples:
            once = self.normalizer.normalize(sample).normalized
            twice = self.normalizer.normalize(once)
            assert twice.normalized == once
            assert twice.applied_rules == ()

    def test_special_characters_then_suffix(self):
        """Suffixes exposed by later rules are removed in a following pass."""
        assert self.normalizer.normalize_name("(주)한국병원!!") == "주한국"

    def test_suffix_never_empties_name(self):
        """A name consisting only of a suffix is kept."""
        assert self.normalizer.normalize_name("보건소") == "보건소"

    def test_whitespace_collapse(self):
        """Runs of whitespace collapse to one space."""
        assert self.normalizer.normalize_name("  부산   해운대구  보건소센터 ") == "부산광역시 해운대구"

    def test_region_expansion_whole_words_only(self):
        """Abbreviations inside a word are not expanded."""
        assert self.normalizer.normalize_name("서울대학교") == "서울대학교"

    def test_normalize_dataframe(self):
        """DataFrame normalization adds normalized and trace columns."""
        df = pd.DataFrame({"source_name": ["서울 강남구보건소", None]})
        result_df = self.normalizer.normalize_dataframe(df)
        assert result_df["source_name_norm"].tolist() == ["서울특별시 강남구", ""]
        assert result_df["source_name_rules"].iloc[1] == []


class TestTransformations:
    """Test cases for the individual rule transformations."""

    def test_remove_suffixes_repeats(self):
        """Stacked suffixes are all removed."""
        assert remove_suffixes("강남보건소센터", ("보건소", "센터")) == "강남"
        assert remove_suffixes("센터", ("센터",)) == "센터"

    def test_remove_special_characters_keeps_excluded(self):
        """Excluded characters survive removal."""
        assert remove_special_characters("A-B/C!D_E", ("-", "/")) == "A-B/CDE"
        assert remove_special_characters("A_B", ("_",)) == "A_B"

    def test_normalize_numerals(self):
        """Whole-word numerals and full-width digits become ASCII digits."""
        assert normalize_numerals("제２병원", DEFAULT_NUMERALS) == "제2병원"
        assert normalize_numerals("삼 층", DEFAULT_NUMERALS) == "3 층"
        assert normalize_numerals("사랑병원", DEFAULT_NUMERALS) == "사랑병원"

    def test_expand_regions_longest_first(self):
        """Canonical names are not expanded twice."""
        mappings = {"서울": "서울특별시", "서울특별시": "서울특별시"}
        assert expand_regions("서울특별시 중구", mappings) == "서울특별시 중구"
        assert expand_regions("서울 중구", mappings) == "서울특별시 중구"


class TestAddressNormalizer:
    """Test cases for address normalization."""

    def setup_method(self):
        """Setup test fixtures."""
        self.store = RuleStore(StaticRuleSource(default_rule_rows(), REGION_MAPPINGS))
        self.normalizer = AddressNormalizer(self.store)

    def test_abbreviated_region_converges(self):
        """Abbreviated and full region names normalize to the same address."""
        full = self.normalizer.normalize("서울특별시 강서구 화곡동", region_code="11")
        short = self.normalizer.normalize("서울 강서구 화곡동", region_code="11")
        assert full.road_address == short.road_address == "서울특별시 강서구 화곡동"
        assert full.address_hash == short.address_hash

    def test_explicit_mappings_bypass_store(self):
        """A caller's captured region mapping is used as given."""
        result = self.normalizer.normalize("서울 강서구 화곡동", region_code="11",
                                           mappings={"서울": "서울시"})
        assert result.road_address == "서울시 강서구 화곡동"

    def test_similarity(self):
        """Edit-distance similarity on a 0-100 scale."""
        assert self.normalizer.similarity("서울 강서구", "서울 강서구") == 100
        assert self.normalizer.similarity("", "서울 강서구") == 0
        assert 0 < self.normalizer.similarity("서울특별시 강서구 화곡동", "서울 강서구 화곡동") < 100

    def test_lot_address_marker_removed(self):
        """Trailing lot-number marker is stripped."""
        result = self.normalizer.normalize(lot_address="서울 강서구 화곡동 123-4번지")
        assert result.lot_address == "서울특별시 강서구 화곡동 123-4"

    def test_noise_characters_removed(self):
        """Characters outside the address allow-list are dropped."""
        result = self.normalizer.normalize("부산 해운대구 센텀로 12 (우동)!!")
        assert result.road_address == "부산광역시 해운대구 센텀로 12 (우동)"

    def test_hash_sensitivity(self):
        """Changing any component changes the hash."""
        base = self.normalizer.normalize("서울 강서구 화곡로 1", "화곡동 1번지", "11").address_hash
        assert base == self.normalizer.normalize("서울 강서구 화곡로 1", "화곡동 1번지", "11").address_hash
        assert base != self.normalizer.normalize("서울 강서구 화곡로 2", "화곡동 1번지", "11").address_hash
        assert base != self.normalizer.normalize("서울 강서구 화곡로 1", "화곡동 2번지", "11").address_hash
        assert base != self.normalizer.normalize("서울 강서구 화곡로 1", "화곡동 1번지", "26").address_hash

    def test_hash_keeps_empty_components(self):
        """An empty component in a different position gives a different hash."""
        assert generate_address_hash("a", "", "") != generate_address_hash("", "a", "")
        assert len(generate_address_hash("a", "b", "c")) == 64

    def test_has_address(self):
        """Blank components do not count as an address."""
        assert has_address("서울 강서구", None)
        assert has_address(None, "화곡동 1번지")
        assert not has_address("  ", None)
        assert not has_address(None, None)


if __name__ == "__main__":
    pytest.main([__file__])
