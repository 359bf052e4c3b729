"""
Screening Scoring - résumé vs. job posting

Overall Score Composition (default weights, configurable in Settings):
    - Vector similarity (40%): full-text embedding cosine similarity
    - Skills match (30%): required skills covered by the candidate
    - Experience match (20%): years of experience vs. the job's range
    - Education match (10%): highest degree vs. the job's requirement

    overall = 100 × (w_vec·similarity + w_skills·skills/100 + w_exp·experience/100 + w_edu·education/100)

Similarity is on [0, 1]; the rule-based sub-scores are on [0, 100]. Inputs are
clamped to their ranges so the overall score always lies in [0, 100] and is
non-decreasing in every sub-score.

When the embedding stage failed, similarity falls back to the chunk score; if
that is missing too, the vector weight is spread proportionally over the
remaining sub-scores.

Fit tiers come from Settings.fit_thresholds (strong ≥80, good ≥65, moderate ≥50).
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from app.services.cv_extractor import EDUCATION_RANK, ProcessedCvData, degree_level
from app.services.skill_taxonomy import extract_skills_with_synonyms, normalize_skill

NEUTRAL_SCORE = 50.0
EDUCATION_BELOW_SCORE = 30.0

DEFAULT_WEIGHTS = {"vector": 0.4, "skills": 0.3, "experience": 0.2, "education": 0.1}
DEFAULT_THRESHOLDS = {"strong_fit": 80.0, "good_fit": 65.0, "moderate_fit": 50.0}

_SKILL_SEPARATORS = re.compile(r"[,;\n|]+")


@dataclass
class JobRequirements:
    """What a job posting asks for, flattened for scoring."""
    title: str = ""
    text: str = ""
    skills: List[str] = field(default_factory=list)
    min_years: Optional[float] = None
    max_years: Optional[float] = None
    education_level: Optional[str] = None

    @classmethod
    def from_posting(cls, job) -> "JobRequirements":
        text = "\n".join(part for part in (job.title, job.description, job.requirements) if part)
        return cls(
            title=job.title or "",
            text=text,
            skills=required_skills(job.skills, text),
            min_years=job.min_experience_years,
            max_years=job.max_experience_years,
            education_level=job.education_level,
        )


@dataclass
class ScoreBreakdown:
    overall_score: float
    fit_tier: str
    vector_similarity: Optional[float]
    chunk_similarity: Optional[float]
    skills_score: float
    experience_score: float
    education_score: float
    matched_skills: List[str] = field(default_factory=list)
    missing_skills: List[str] = field(default_factory=list)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ==================== Sub-scores ====================

def required_skills(skills_field: Optional[str], job_text: str = "") -> List[str]:
    """
    Canonical skills a job asks for: its comma-separated skills field plus
    taxonomy skills mentioned in the posting text. Order preserved, no duplicates.
    """
    found: List[str] = []
    for raw in _SKILL_SEPARATORS.split(skills_field or ""):
        skill = normalize_skill(raw)
        if skill and skill not in found:
            found.append(skill)

    for category_skills in extract_skills_with_synonyms(job_text).values():
        for skill in category_skills:
            if skill not in found:
                found.append(skill)
    return found


def candidate_skills(cv: ProcessedCvData) -> List[str]:
    skills = cv.skills
    combined = (
        skills.technical + skills.programming_languages + skills.frameworks +
        skills.tools + skills.soft + skills.languages
    )
    result = []
    for skill in combined:
        canonical = normalize_skill(skill)
        if canonical not in result:
            result.append(canonical)
    return result


def _skills_match(required: str, owned: str) -> bool:
    if required == owned:
        return True
    # Substring either way ("spring" vs "spring boot"), ignoring tiny tokens
    if min(len(required), len(owned)) < 3:
        return False
    return required in owned or owned in required


def match_skills(required: List[str], owned: List[str]) -> Tuple[float, List[str], List[str]]:
    """
    Returns:
        (score 0-100, matched skills, missing skills); 50 when the job lists none
    """
    if not required:
        return NEUTRAL_SCORE, [], []

    matched = [r for r in required if any(_skills_match(r, o) for o in owned)]
    missing = [r for r in required if r not in matched]
    return round(100.0 * len(matched) / len(required), 2), matched, missing


def match_experience(years: float, min_years: Optional[float], max_years: Optional[float]) -> float:
    """
    Experience score 0-100.

        no requirement   100
        within range     100
        above max        max(70, 100 − 10·years over)
        below min        max(0, 100 − 20·years short)
    """
    if min_years is None and max_years is None:
        return 100.0

    years = max(0.0, years or 0.0)
    if min_years is not None and years < min_years:
        return round(max(0.0, 100.0 - 20.0 * (min_years - years)), 2)
    if max_years is not None and years > max_years:
        return round(max(70.0, 100.0 - 10.0 * (years - max_years)), 2)
    return 100.0


def match_education(required_level: Optional[str], candidate_level: Optional[str]) -> float:
    """
    Education score 0-100: 50 when either side is unknown, 100 when the
    candidate's level meets the requirement, 30 otherwise.
    """
    required = degree_level(required_level) if required_level else None
    if required_level and required is None and required_level in EDUCATION_RANK:
        required = required_level
    if not required or not candidate_level:
        return NEUTRAL_SCORE

    if EDUCATION_RANK.get(candidate_level, 0) >= EDUCATION_RANK[required]:
        return 100.0
    return EDUCATION_BELOW_SCORE


# ==================== Overall ====================

def compute_overall_score(
    vector_similarity: Optional[float],
    skills_score: float,
    experience_score: float,
    education_score: float,
    weights: Optional[Dict[str, float]] = None,
) -> float:
    """
    Weighted overall score on [0, 100], rounded to two decimals.

    Args:
        vector_similarity: [0, 1] or None when unavailable
        skills_score, experience_score, education_score: [0, 100]
        weights: keys vector, skills, experience, education (sum 1.0)
    """
    weights = weights or DEFAULT_WEIGHTS
    parts = {
        "skills": _clamp(skills_score, 0.0, 100.0) / 100.0,
        "experience": _clamp(experience_score, 0.0, 100.0) / 100.0,
        "education": _clamp(education_score, 0.0, 100.0) / 100.0,
    }
    if vector_similarity is not None:
        parts["vector"] = _clamp(vector_similarity, 0.0, 1.0)

    total_weight = sum(weights[name] for name in parts)
    if total_weight <= 0:
        return 0.0

    weighted = sum(weights[name] * value for name, value in parts.items()) / total_weight
    return round(_clamp(100.0 * weighted, 0.0, 100.0), 2)


def fit_tier(score: float, thresholds: Optional[Dict[str, float]] = None) -> str:
    thresholds = thresholds or DEFAULT_THRESHOLDS
    if score >= thresholds["strong_fit"]:
        return "strong_fit"
    if score >= thresholds["good_fit"]:
        return "good_fit"
    if score >= thresholds["moderate_fit"]:
        return "moderate_fit"
    return "poor_fit"


def score_candidate(
    cv: ProcessedCvData,
    job: JobRequirements,
    vector_similarity: Optional[float],
    chunk_similarity: Optional[float] = None,
    weights: Optional[Dict[str, float]] = None,
    thresholds: Optional[Dict[str, float]] = None,
) -> ScoreBreakdown:
    """
    Compute every sub-score and the overall score for one application.

    Example:
        >>> breakdown = score_candidate(cv, JobRequirements.from_posting(job), 0.82, 0.9)
        >>> breakdown.overall_score, breakdown.fit_tier
        (84.3, 'strong_fit')
    """
    skills_score, matched, missing = match_skills(job.skills, candidate_skills(cv))
    experience_score = match_experience(cv.total_experience_years, job.min_years, job.max_years)
    highest = cv.highest_education
    education_score = match_education(job.education_level, highest.level if highest else None)

    similarity = vector_similarity if vector_similarity is not None else chunk_similarity
    overall = compute_overall_score(similarity, skills_score, experience_score, education_score, weights)

    return ScoreBreakdown(
        overall_score=overall,
        fit_tier=fit_tier(overall, thresholds),
        vector_similarity=vector_similarity,
        chunk_similarity=chunk_similarity,
        skills_score=skills_score,
        experience_score=experience_score,
        education_score=education_score,
        matched_skills=matched,
        missing_skills=missing,
    )


def build_highlights(cv: ProcessedCvData, job: JobRequirements, breakdown: ScoreBreakdown) -> Tuple[List[str], List[str]]:
    """Human-readable key highlights and concerns, at most five of each."""
    highlights = []
    concerns = []

    similarity = breakdown.vector_similarity
    if similarity is not None and similarity > 0.7:
        highlights.append("Strong CV match with the job description")
    elif similarity is not None and similarity > 0.5:
        highlights.append("Good CV match with the job description")
    elif similarity is None:
        concerns.append("Semantic similarity unavailable")

    if breakdown.matched_skills:
        highlights.append(f"Skills: {', '.join(breakdown.matched_skills[:5])}")
    if breakdown.missing_skills:
        concerns.append(f"Missing skills: {', '.join(breakdown.missing_skills[:5])}")

    years = cv.total_experience_years
    if breakdown.experience_score == 100.0 and years:
        highlights.append(f"{years} years of experience")
    elif job.min_years is not None and years < job.min_years:
        concerns.append(f"{years} years of experience, {job.min_years:g} required")
    elif job.max_years is not None and years > job.max_years:
        concerns.append(f"{years} years of experience exceeds the {job.max_years:g}-year range")

    highest = cv.highest_education
    if breakdown.education_score == 100.0 and highest:
        institution = f" ({highest.institution})" if highest.institution else ""
        highlights.append(f"{highest.level.replace('_', ' ').title()} degree{institution}")
    elif breakdown.education_score == EDUCATION_BELOW_SCORE:
        concerns.append(f"Education below required level ({job.education_level})")

    if cv.current_title:
        company = f" at {cv.current_company}" if cv.current_company else ""
        highlights.append(f"Currently {cv.current_title}{company}")

    return highlights[:5], concerns[:5]


def build_summary(cv: ProcessedCvData, job: JobRequirements, breakdown: ScoreBreakdown) -> str:
    name = cv.personal_info.name or "The candidate"
    tier = breakdown.fit_tier.replace("_", " ")
    parts = [f"{name} is a {tier} for {job.title or 'this position'} with an overall score of {breakdown.overall_score:g}."]
    if breakdown.matched_skills:
        parts.append(f"Matches {len(breakdown.matched_skills)} of {len(job.skills)} required skills.")
    if cv.total_experience_years:
        parts.append(f"Brings {cv.total_experience_years} years of experience.")
    return " ".join(parts)
