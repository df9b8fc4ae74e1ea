"""
Unit tests for similarity primitives and the score engine.
"""

import pytest
import sys
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from registry_match.match.similarity import edit_similarity, quick_similarity, round_half_up
from registry_match.match.score_engine import (
    ScoreEngine,
    MatchSignal,
    Recommendation,
    evaluate_text_match,
    get_scoring_statistics,
    SIGNAL_ORDER,
)


class TestSimilarity:
    """Test cases for similarity primitives."""

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.5) == 1
        assert round_half_up(2.49) == 2

    def test_edit_similarity(self):
        """Normalized Levenshtein similarity."""
        assert edit_similarity("서울 강서구", "서울 강서구") == 100
        assert edit_similarity("ABC", "abc ") == 100
        assert edit_similarity("", "abc") == 0
        assert edit_similarity("abc", None) == 0
        # distance 3 over length 7
        assert edit_similarity("kitten", "sitting") == 57

    def test_quick_similarity(self):
        """Token-overlap pre-filter heuristic."""
        assert quick_similarity("서울특별시 강남구", "서울특별시 강남구") == 100
        assert quick_similarity("강남구", "서울특별시 강남구") == 80
        assert quick_similarity("a b c", "a b d") == 67
        assert quick_similarity("서울특별시 마포구", "부산광역시 해운대구") == 0
        assert quick_similarity("", "서울") == 0


class TestScoreEngine:
    """Test cases for multi-signal scoring."""

    def setup_method(self):
        """Setup test fixtures."""
        self.engine = ScoreEngine()

    def test_exact_match(self):
        """Identical candidate and registry entry on every field."""
        result = self.engine.score("서울특별시 강남구", "서울특별시 강남구", "h1", "h1", "11", "11")

        values = {s.name: s.value for s in result.signals}
        assert values == {
            "text_match": 100,
            "name_similarity": 100,
            "address_match": 100,
            "region_code_match": 100,
        }
        assert result.score == 100
        assert result.recommendation == Recommendation.AUTO_MATCH
        assert result.matched_signals == 4

    def test_signal_order_and_contribution(self):
        """Signals always come in the same order with value times weight."""
        result = self.engine.score("강남", "서울특별시 강남구")
        assert tuple(s.name for s in result.signals) == SIGNAL_ORDER

        text_signal = result.signal("text_match")
        assert text_signal.value == 80
        assert text_signal.contribution == pytest.approx(32.0)

    def test_missing_address_and_region(self):
        """Absent hashes or regions never count as a match."""
        result = self.engine.score("서울특별시 강남구", "서울특별시 강남구")
        assert result.signal("address_match").value == 0
        assert result.signal("region_code_match").value == 0
        assert result.score == 65
        assert result.recommendation == Recommendation.REJECT

    def test_name_and_region_without_address(self):
        """Three strong signals below the auto-match score go to review."""
        result = self.engine.score("서울특별시 강남구", "서울특별시 강남구", None, None, "11", "11")
        assert result.score == 80
        assert result.matched_signals == 3
        assert result.recommendation == Recommendation.MANUAL_REVIEW

    def test_score_bounds_and_determinism(self):
        """Scores stay within 0-100 and repeat exactly."""
        pairs = [
            ("", ""),
            ("서울특별시 강남구", ""),
            ("가", "나다라마바사"),
            ("서울특별시 강남구", "서울특별시 강남구 역삼동"),
        ]
        for candidate, registry in pairs:
            first = self.engine.score(candidate, registry, "h1", "h2", "11", "11")
            second = self.engine.score(candidate, registry, "h1", "h2", "11", "11")
            assert 0 <= first.score <= 100
            assert all(0 <= s.value <= 100 for s in first.signals)
            assert first == second

    def test_monotonic_in_each_signal(self):
        """Adding a matching address or region never lowers the score."""
        base = self.engine.score("서울특별시 강남구", "서울특별시 강남구 역삼동")
        with_region = self.engine.score("서울특별시 강남구", "서울특별시 강남구 역삼동", None, None, "11", "11")
        with_both = self.engine.score("서울특별시 강남구", "서울특별시 강남구 역삼동", "h", "h", "11", "11")
        assert base.score <= with_region.score <= with_both.score

    def test_tier_classification(self):
        """Auto-match needs both the score and the signal count."""
        assert self.engine.classify(96, 3) == Recommendation.AUTO_MATCH
        assert self.engine.classify(100, 2) == Recommendation.MANUAL_REVIEW
        assert self.engine.classify(70, 0) == Recommendation.MANUAL_REVIEW
        assert self.engine.classify(69, 4) == Recommendation.REJECT

    def test_configurable_thresholds(self):
        """Thresholds come from configuration."""
        engine = ScoreEngine({"thresholds": {"manual_review_score": 60}})
        result = engine.score("서울특별시 강남구", "서울특별시 강남구")
        assert result.score == 65
        assert result.recommendation == Recommendation.MANUAL_REVIEW

    def test_combine_divides_by_total_weight(self):
        """The combined score is normalized by the weight total."""
        signals = (
            MatchSignal("a", 100, 0.5),
            MatchSignal("b", 50, 1.5),
        )
        # (50 + 75) / 2.0
        assert ScoreEngine.combine(signals) == 63
        assert ScoreEngine.combine((MatchSignal("a", 100, 0.0),)) == 0

    def test_text_match_rules(self):
        assert evaluate_text_match(" ABC ", "abc") == 100
        assert evaluate_text_match("abc", "xabcx") == 80
        assert evaluate_text_match("abc", "xyz") == 0
        assert evaluate_text_match("", "") == 0

    def test_to_dict(self):
        """Audit capture of a score result."""
        result = self.engine.score("서울특별시 강남구", "서울특별시 강남구", "h1", "h1", "11", "11")
        payload = result.to_dict()
        assert payload["score"] == 100
        assert payload["total_signals"] == 4
        assert payload["signals"][0]["signal_name"] == "text_match"
        assert payload["signals"][2]["details"]["exact_match"] is True

    def test_scoring_statistics(self):
        results = [
            self.engine.score("서울특별시 강남구", "서울특별시 강남구", "h1", "h1", "11", "11"),
            self.engine.score("서울특별시 강남구", "서울특별시 강남구"),
        ]
        stats = get_scoring_statistics(results)
        assert stats["total"] == 2
        assert stats["decision_distribution"][Recommendation.AUTO_MATCH] == 1
        assert stats["decision_distribution"][Recommendation.REJECT] == 1
        assert stats["score_statistics"]["max_score"] == 100
        assert get_scoring_statistics([])["total"] == 0


if __name__ == "__main__":
    pytest.main([__file__])
