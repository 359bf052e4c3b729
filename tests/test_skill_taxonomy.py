"""
Tests for the skill taxonomy and alias matching
"""

import pytest

from app.services.skill_taxonomy import (
    category_of,
    extract_skills_with_synonyms,
    extract_technical_skills,
    normalize_skill,
)


class TestNormalizeSkill:
    @pytest.mark.parametrize("raw,canonical", [
        ("k8s", "kubernetes"),
        ("Postgres", "postgresql"),
        ("ReactJS", "react"),
        ("  Spring   Boot ", "spring"),
        ("Foo Bar", "foo bar"),
    ])
    def test_aliases_collapse(self, raw, canonical):
        assert normalize_skill(raw) == canonical

    def test_category_of(self):
        assert category_of("NodeJS") == "frameworks"
        assert category_of("scrum") == "soft"
        assert category_of("cobol") is None


class TestExtractSkills:
    def test_aliases_count_once(self):
        found = extract_skills_with_synonyms("Kubernetes, k8s and kubectl daily")
        assert found["cloud_devops"] == ["kubernetes"]

    def test_symbol_skills(self):
        found = extract_skills_with_synonyms("C# and C++ on .NET, front end in Next.js")
        assert found["programming_languages"] == ["c#", "c++"]
        assert ".net" in found["frameworks"]
        assert "next.js" in found["frameworks"]

    def test_short_terms_are_case_sensitive(self):
        assert "go" not in extract_technical_skills("ready to go live")
        assert "go" in extract_technical_skills("Services written in Go")

    def test_no_substring_matches(self):
        skills = extract_technical_skills("PostgreSQL and JavaScript")
        assert "sql" not in skills
        assert "java" not in skills
        assert skills == ["javascript", "postgresql"]

    def test_soft_and_spoken_languages(self):
        found = extract_skills_with_synonyms("Team player with strong English and tiếng Việt")
        assert found["soft"] == ["teamwork"]
        assert found["spoken_languages"] == ["english", "vietnamese"]

    def test_empty_text(self):
        assert extract_skills_with_synonyms("") == {}
