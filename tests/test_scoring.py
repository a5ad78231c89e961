import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import penalties
import similarity
from text_normalizer import normalize, normalized_phrase, strip_accents


# ---------------------------------------------------------------- normalizer
def test_normalize_drops_stopwords_after_accents_are_stripped():
    # "và" becomes "va", which is not a stop-word; "chó" becomes "cho", which is
    assert normalize("và chó") == ["va"]
    assert normalize("Gửi cho bạn theo thời gian!") == ["gui", "ban", "thoi", "gian"]


def test_normalize_output_is_ascii_lowercase():
    # đ has no decomposition and falls out with the punctuation
    assert normalize("Đề bài") == ["e", "bai"]
    assert normalize("Hello, World") == ["hello", "world"]


def test_accent_aware_stopwords_match_before_stripping():
    assert normalize("và chó", accent_aware_stopwords=True) == ["cho"]
    assert normalize("Đề bài", accent_aware_stopwords=True) == ["de", "bai"]
    assert normalize("để", accent_aware_stopwords=True) == []
    assert normalized_phrase("và chó", accent_aware_stopwords=True) == "cho"


def test_normalize_empty_input():
    assert normalize("") == []
    assert normalize(None) == []
    assert normalized_phrase("   ") == ""


def test_strip_accents_maps_letters_without_decomposition():
    assert strip_accents("Café đường") == "Cafe duong"


# ---------------------------------------------------------------- similarity
def test_empty_answer_or_reference_scores_zero():
    result = similarity.score("", "some reference", ["a", "b"])
    assert result["similarity"] == 0.0
    assert result["keywordsMatched"] == 0
    assert result["totalKeywords"] == 2

    assert similarity.score("answer", "", None)["similarity"] == 0.0


def test_identical_answer_without_keywords_caps_at_content_weight():
    text = "delay before transfer begins"
    result = similarity.score(text, text, [])
    assert result["contentSimilarity"] == pytest.approx(100.0)
    assert result["keywordScore"] == 0.0
    assert result["similarity"] == pytest.approx(40.0)


def test_identical_answer_with_all_keywords_scores_full():
    text = "maximum data rate of a link"
    result = similarity.score(text, text, ["data rate", "link"])
    assert result["keywordsMatched"] == 2
    assert result["similarity"] == pytest.approx(100.0)


def test_partial_answer_mixes_keyword_and_content_scores():
    result = similarity.score("Delay!", "delay before transfer begins", ["delay", "transfer"])
    assert result["keywordsMatched"] == 1
    assert result["keywordScore"] == pytest.approx(50.0)
    assert result["contentSimilarity"] == pytest.approx(25.0)
    assert result["similarity"] == pytest.approx(40.0)
    assert similarity.points_for(result["similarity"], 10) == pytest.approx(4.0)


def test_keyword_match_ignores_accents_and_case():
    assert similarity.count_keywords_matched("Độ TRỄ mạng cao", ["độ trễ", "băng thông"]) == 1


def test_blank_keywords_count_toward_total_but_never_match():
    result = similarity.score("delay", "delay", ["delay", ""])
    assert result["totalKeywords"] == 2
    assert result["keywordsMatched"] == 1
    assert result["keywordScore"] == pytest.approx(50.0)


def test_scoring_can_use_accent_aware_stopwords():
    reference = "và chó"
    assert similarity.score("va", reference)["contentSimilarity"] == pytest.approx(100.0)
    assert similarity.score("va", reference, accent_aware_stopwords=True)["contentSimilarity"] == 0.0


# ----------------------------------------------------------------- penalties
def test_penalty_percentage_per_violation():
    assert penalties.penalty_percentage(2, 1) == 13
    assert penalties.penalty_percentage(0, 0) == 0


def test_reconcile_applies_penalty():
    figures = penalties.reconcile(80, 2, 1)
    assert figures["penalty_percentage"] == 13
    assert figures["penalty_applied"] is True
    assert figures["final_score"] == pytest.approx(69.6)
    assert figures["original_score"] == 80.0


def test_reconcile_without_violations_keeps_score():
    figures = penalties.reconcile(42.5, 0, 0)
    assert figures["penalty_applied"] is False
    assert figures["final_score"] == pytest.approx(42.5)


def test_penalty_over_one_hundred_percent_floors_final_score_at_zero():
    figures = penalties.reconcile(90, 24, 0)
    assert figures["penalty_percentage"] == 120
    assert figures["final_score"] == 0.0
