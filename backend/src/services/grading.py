"""Deterministic evidence grading for a set of retrieved studies.

The score is the sum of four independent bands:

    study type   max 40   strongest design present anywhere in the set
    sample size  max 25   mean over documents that report one (skipped if none)
    recency      max 20   mean age in years over all documents
    conflicts    max 15   15 if no document discloses a conflict, else 5

Study type is a presence test, so one meta-analysis lifts the whole set, while
sample size and recency are means, so many small or old studies dilute a
strong one.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Sequence
from statistics import fmean

from src.models.research import (
    Document,
    EvidenceFactors,
    EvidenceGrade,
    EvidenceStrength,
)

logger = logging.getLogger(__name__)

MAX_SCORE = 100

# First match wins, in this order.
STUDY_TYPE_POINTS: tuple[tuple[str, int], ...] = (
    ("Meta-Analysis", 40),
    ("Randomized Controlled Trial", 30),
    ("Systematic Review", 25),
    ("Cohort Study", 20),
    ("Case-Control Study", 15),
)
DEFAULT_STUDY_TYPE_POINTS = 10

# (minimum mean sample size, points)
SAMPLE_SIZE_POINTS: tuple[tuple[int, int], ...] = ((1000, 25), (500, 20), (100, 15))
DEFAULT_SAMPLE_SIZE_POINTS = 10

# (maximum mean age in years, points)
RECENCY_POINTS: tuple[tuple[int, int], ...] = ((2, 20), (5, 15), (10, 10))
DEFAULT_RECENCY_POINTS = 5

NO_CONFLICT_POINTS = 15
CONFLICT_POINTS = 5

LARGE_SAMPLE_THRESHOLD = 500
RECENT_THRESHOLD_YEARS = 5

NO_EVIDENCE_REASONING = "No evidence available"
LIMITED_EVIDENCE_REASONING = "Limited evidence available"


def _empty_grade() -> EvidenceGrade:
    return EvidenceGrade(
        strength="Insufficient",
        score=0,
        factors=EvidenceFactors(
            study_types=[],
            sample_sizes=[],
            recency=0,
            conflicts_of_interest=False,
            meta_analysis_present=False,
            rct_present=False,
        ),
        reasoning=NO_EVIDENCE_REASONING,
    )


def analyze_factors(
    documents: Sequence[Document], current_year: int
) -> EvidenceFactors:
    """Collect the per-set signals the score is built from."""
    study_types = [doc.study_type for doc in documents]
    sample_sizes = [doc.sample_size for doc in documents if doc.sample_size]
    recency = fmean(current_year - doc.publication_date.year for doc in documents)
    conflicts = any(doc.conflicts_of_interest for doc in documents)

    return EvidenceFactors(
        study_types=study_types,
        sample_sizes=sample_sizes,
        recency=recency,
        conflicts_of_interest=conflicts,
        meta_analysis_present="Meta-Analysis" in study_types,
        rct_present="Randomized Controlled Trial" in study_types,
    )


def _study_type_points(factors: EvidenceFactors) -> int:
    for study_type, points in STUDY_TYPE_POINTS:
        if study_type in factors.study_types:
            return points
    return DEFAULT_STUDY_TYPE_POINTS


def _sample_size_points(factors: EvidenceFactors) -> int:
    if not factors.sample_sizes:
        return 0
    mean_size = fmean(factors.sample_sizes)
    for minimum, points in SAMPLE_SIZE_POINTS:
        if mean_size >= minimum:
            return points
    return DEFAULT_SAMPLE_SIZE_POINTS


def _recency_points(factors: EvidenceFactors) -> int:
    for max_age, points in RECENCY_POINTS:
        if factors.recency <= max_age:
            return points
    return DEFAULT_RECENCY_POINTS


def calculate_score(factors: EvidenceFactors) -> int:
    """Sum the four bands, clamped to [0, 100]."""
    score = (
        _study_type_points(factors)
        + _sample_size_points(factors)
        + _recency_points(factors)
        + (CONFLICT_POINTS if factors.conflicts_of_interest else NO_CONFLICT_POINTS)
    )
    return max(0, min(score, MAX_SCORE))


def determine_strength(score: int, factors: EvidenceFactors) -> EvidenceStrength:
    """Map a score to a strength label. Strong also requires a meta-analysis or RCT."""
    if score >= 80 and factors.meta_analysis_present:
        return "Strong"
    if score >= 70 and (factors.meta_analysis_present or factors.rct_present):
        return "Strong"
    if score >= 60:
        return "Moderate"
    if score >= 40:
        return "Weak"
    return "Insufficient"


def generate_reasoning(factors: EvidenceFactors) -> str:
    """Build a short explanation from the factors that helped or hurt the grade."""
    reasons: list[str] = []

    if factors.meta_analysis_present:
        reasons.append("Meta-analysis provides highest level of evidence")
    elif factors.rct_present:
        reasons.append("Randomized controlled trials provide strong evidence")

    if factors.sample_sizes and fmean(factors.sample_sizes) >= LARGE_SAMPLE_THRESHOLD:
        reasons.append("Large sample sizes increase reliability")

    if factors.recency <= RECENT_THRESHOLD_YEARS:
        reasons.append("Recent studies reflect current knowledge")

    if factors.conflicts_of_interest:
        reasons.append("Some studies have conflicts of interest")

    return "; ".join(reasons) or LIMITED_EVIDENCE_REASONING


def grade_evidence(
    documents: Sequence[Document], *, current_year: int | None = None
) -> EvidenceGrade:
    """Grade the strength of the evidence provided by a set of documents."""
    if not documents:
        return _empty_grade()

    if current_year is None:
        current_year = datetime.date.today().year

    factors = analyze_factors(documents, current_year)
    score = calculate_score(factors)
    strength = determine_strength(score, factors)
    grade = EvidenceGrade(
        strength=strength,
        score=score,
        factors=factors,
        reasoning=generate_reasoning(factors),
    )
    logger.debug(
        "Graded %d documents: score=%d strength=%s",
        len(documents),
        score,
        strength,
    )
    return grade
