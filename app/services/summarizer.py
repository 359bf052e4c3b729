"""
Screening Summarizer - recruiter-facing summary of a screening result

With an OpenAI key configured, GPT-4o-mini writes the summary, key highlights
and concerns as JSON. Without a key, or whenever the call or the parsing
fails, the deterministic summary from app.services.scoring is used instead,
so a screening never fails because of this step.

Usage:
    summarizer = get_summarizer()
    summary = await summarizer.summarize(cv, job, breakdown)
    summary.text, summary.highlights, summary.concerns, summary.source
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from openai import AsyncOpenAI

from app.config import get_settings
from app.services.cv_extractor import ProcessedCvData
from app.services.scoring import JobRequirements, ScoreBreakdown, build_highlights, build_summary

logger = logging.getLogger(__name__)


SUMMARY_PROMPT = """Summarize how well this candidate fits the job for a recruiter.

Job title: {title}
Job posting:
{job_text}

Candidate facts:
{candidate}

Scores (0-100): overall {overall}, skills {skills}, experience {experience}, education {education}
Matched skills: {matched}
Missing skills: {missing}

Return ONLY valid JSON in this exact format:
{{
  "summary": "two or three sentences",
  "key_highlights": ["short strength", "..."],
  "concerns": ["short concern", "..."]
}}"""


@dataclass
class ScreeningSummary:
    text: str
    highlights: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)
    source: str = "rules"


def _candidate_facts(cv: ProcessedCvData) -> str:
    facts = {
        "name": cv.personal_info.name,
        "total_experience_years": cv.total_experience_years,
        "current_title": cv.current_title,
        "current_company": cv.current_company,
        "education": [
            {"level": e.level, "institution": e.institution, "year": e.graduation_year}
            for e in cv.education[:3]
        ],
        "technical_skills": cv.skills.technical[:20],
    }
    return json.dumps(facts, ensure_ascii=False)


class ScreeningSummarizer:
    """
    Attributes:
        client: Async OpenAI client, or None for rule-based summaries only
        model: Chat model (default gpt-4o-mini)
    """

    def __init__(self, openai_client: Optional[Any] = None, model: str = "gpt-4o-mini"):
        self.client = openai_client
        self.model = model

    def fallback(self, cv: ProcessedCvData, job: JobRequirements, breakdown: ScoreBreakdown) -> ScreeningSummary:
        highlights, concerns = build_highlights(cv, job, breakdown)
        return ScreeningSummary(
            text=build_summary(cv, job, breakdown),
            highlights=highlights,
            concerns=concerns,
            source="rules",
        )

    async def summarize(
        self,
        cv: ProcessedCvData,
        job: JobRequirements,
        breakdown: ScoreBreakdown,
    ) -> ScreeningSummary:
        """Never raises; falls back to the rule-based summary."""
        if self.client is None:
            return self.fallback(cv, job, breakdown)

        try:
            content = await self._call_llm(cv, job, breakdown)
            parsed = self._parse_llm_response(content)
            if parsed is not None:
                return parsed
        except Exception as e:
            logger.error(f"Summary generation failed: {e}")

        return self.fallback(cv, job, breakdown)

    async def _call_llm(self, cv: ProcessedCvData, job: JobRequirements, breakdown: ScoreBreakdown) -> str:
        prompt = SUMMARY_PROMPT.format(
            title=job.title,
            job_text=job.text[:3000],
            candidate=_candidate_facts(cv),
            overall=breakdown.overall_score,
            skills=breakdown.skills_score,
            experience=breakdown.experience_score,
            education=breakdown.education_score,
            matched=", ".join(breakdown.matched_skills) or "none",
            missing=", ".join(breakdown.missing_skills) or "none",
        )
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a recruitment screening assistant. Be factual and return only valid JSON."
                },
                {"role": "user", "content": prompt}
            ],
            temperature=0.2,
            max_tokens=600
        )
        return response.choices[0].message.content

    def _parse_llm_response(self, content: Optional[str]) -> Optional[ScreeningSummary]:
        if not content:
            return None

        content = content.strip()
        # Markdown code fences
        if content.startswith("```"):
            lines = content.split("\n")
            content = "\n".join(lines[1:-1])

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse summary response as JSON: {content[:100]}")
            return None

        summary = str(data.get("summary") or "").strip()
        if not summary:
            return None

        return ScreeningSummary(
            text=summary,
            highlights=[str(h) for h in data.get("key_highlights") or []][:5],
            concerns=[str(c) for c in data.get("concerns") or []][:5],
            source="llm",
        )


def get_summarizer() -> ScreeningSummarizer:
    """Summarizer for the current event loop; LLM-backed only when an OpenAI key is set."""
    settings = get_settings()
    client = AsyncOpenAI(api_key=settings.openai_api_key) if settings.openai_api_key else None
    return ScreeningSummarizer(openai_client=client, model=settings.summary_model)
