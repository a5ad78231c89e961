# similarity.py
# -----------------------------------------------------------------------------
# Local similarity scoring between a free-text answer and its reference.
# Used as the grading fallback when the server cannot grade a question.
#   total = keyword_score * 0.6 + content_score * 0.4
# Every keyword entry counts toward the total, blank ones included; blanks
# can never match.
# -----------------------------------------------------------------------------

from typing import Any, Dict, List, Optional

from text_normalizer import normalize, normalized_phrase

KEYWORD_WEIGHT = 0.6
CONTENT_WEIGHT = 0.4


def _empty_result(total_keywords: int) -> Dict[str, Any]:
    return {
        "similarity": 0.0,
        "keywordsMatched": 0,
        "totalKeywords": total_keywords,
        "contentSimilarity": 0.0,
        "keywordScore": 0.0,
    }


def count_keywords_matched(answer: str, keywords: Optional[List[Any]],
                           accent_aware_stopwords: bool = False) -> int:
    """A keyword counts when its normalized phrase is a substring of the normalized answer."""
    if not answer or not keywords:
        return 0
    answer_phrase = normalized_phrase(answer, accent_aware_stopwords)
    hit = 0
    for kw in keywords:
        if not kw or not isinstance(kw, str):
            continue
        kw_phrase = normalized_phrase(kw, accent_aware_stopwords)
        if kw_phrase and kw_phrase in answer_phrase:
            hit += 1
    return hit


def score(answer: Optional[str], reference: Optional[str],
          keywords: Optional[List[Any]] = None,
          accent_aware_stopwords: bool = False) -> Dict[str, Any]:
    """
    Returns {"similarity", "keywordsMatched", "totalKeywords", "contentSimilarity",
    "keywordScore"}; all numbers are percentages in 0..100 except the counts.
    Missing answer or reference yields an all-zero result.
    """
    keywords = list(keywords or [])
    total_keywords = len(keywords)
    if not answer or not reference:
        return _empty_result(total_keywords)

    answer_set = set(normalize(answer, accent_aware_stopwords))
    reference_tokens = set(normalize(reference, accent_aware_stopwords))

    matched = count_keywords_matched(answer, keywords, accent_aware_stopwords) if total_keywords else 0
    keyword_score = (matched / total_keywords) * 100.0 if total_keywords else 0.0

    common = len(reference_tokens & answer_set)
    content_score = (common / len(reference_tokens)) * 100.0 if reference_tokens else 0.0

    return {
        "similarity": keyword_score * KEYWORD_WEIGHT + content_score * CONTENT_WEIGHT,
        "keywordsMatched": matched,
        "totalKeywords": total_keywords,
        "contentSimilarity": content_score,
        "keywordScore": keyword_score,
    }


def points_for(similarity: float, max_points: float) -> float:
    return round((float(similarity) / 100.0) * float(max_points), 2)
