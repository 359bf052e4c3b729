"""
Tests for résumé fact extraction

Tests cover:
- Personal info (name, email, phone, location)
- Date tokens and experience spans
- Education parsing and degree levels
- Skills, summary and partial results
"""

from datetime import date

import pytest

from app.services.cv_extractor import (
    WorkExperience,
    degree_level,
    extract_cv_data,
    extract_phone,
    months_between,
    parse_date_token,
    split_sections,
    total_experience_months,
)
from tests.conftest import RESUME_TEXT

TODAY = date(2025, 1, 1)


@pytest.fixture
def cv():
    return extract_cv_data(RESUME_TEXT, today=TODAY)


class TestPersonalInfo:
    def test_contact_fields(self, cv):
        info = cv.personal_info
        assert info.name == "Nguyen Van An"
        assert info.email == "an.nguyen@example.com"
        assert info.phone == "0912345678"
        assert info.location == "Ho Chi Minh City"

    def test_phone_with_separators(self):
        assert extract_phone("Mobile: 091 234 5678") == "0912345678"

    def test_uppercase_name_is_title_cased(self):
        cv = extract_cv_data("TRAN THI MAI\nEmail: mai@example.com")
        assert cv.personal_info.name == "Tran Thi Mai"


class TestDates:
    """Date tokens and month arithmetic."""

    def test_present_means_today(self):
        assert parse_date_token("Present", TODAY) == (TODAY, True)
        assert parse_date_token("hiện tại", TODAY) == (TODAY, True)

    @pytest.mark.parametrize("token,expected", [
        ("03/2021", date(2021, 3, 1)),
        ("2019", date(2019, 1, 1)),
        ("Sep 2018", date(2018, 9, 1)),
    ])
    def test_tokens(self, token, expected):
        assert parse_date_token(token, TODAY) == (expected, False)

    def test_invalid_month(self):
        assert parse_date_token("13/2021", TODAY) == (None, False)

    def test_months_between_never_negative(self):
        assert months_between(date(2020, 1, 1), date(2021, 7, 1)) == 18
        assert months_between(date(2021, 1, 1), date(2020, 1, 1)) == 0

    def test_overlapping_spans_counted_once(self):
        experiences = [
            WorkExperience(start_date=date(2018, 1, 1), end_date=date(2020, 1, 1)),
            WorkExperience(start_date=date(2019, 1, 1), end_date=date(2021, 1, 1)),
            WorkExperience(start_date=date(2022, 1, 1), end_date=date(2022, 7, 1)),
        ]
        assert total_experience_months(experiences, TODAY) == 36 + 6


class TestExperience:
    def test_entries_most_recent_first(self, cv):
        first, second = cv.work_experience

        assert (first.title, first.company) == ("Senior Python Developer", "Acme Corp")
        assert first.start_date == date(2020, 1, 1)
        assert first.is_current is True
        assert first.end_date is None
        assert first.duration_months == 60
        assert "FastAPI" in first.description

        assert (second.title, second.company) == ("Python Developer", "Beta Ltd")
        assert second.end_date == date(2019, 12, 1)
        assert second.duration_months == 42

    def test_totals(self, cv):
        assert cv.total_experience_months == 102
        assert cv.total_experience_years == 8.5
        assert cv.current_title == "Senior Python Developer"
        assert cv.current_company == "Acme Corp"


class TestEducation:
    def test_degree_entry(self, cv):
        entry = cv.highest_education
        assert entry.level == "bachelor"
        assert entry.field == "Computer Science"
        assert entry.institution == "Ho Chi Minh City University of Technology"
        assert entry.graduation_year == 2016

    @pytest.mark.parametrize("text,level", [
        ("Thạc sĩ Quản trị Kinh doanh", "master"),
        ("PhD in Physics", "phd"),
        ("Cử nhân Kinh tế", "bachelor"),
        ("High School graduate", "high_school"),
        ("Team lead", None),
    ])
    def test_degree_level(self, text, level):
        assert degree_level(text) == level


class TestSkillsAndSummary:
    def test_skills_grouped(self, cv):
        assert cv.skills.programming_languages == ["python"]
        assert cv.skills.frameworks == ["django", "fastapi"]
        assert "docker" in cv.skills.tools
        assert "teamwork" in cv.skills.soft
        assert cv.skills.technical[0] == "python"

    def test_summary_from_section(self, cv):
        assert cv.summary == "Backend engineer building Python services."

    def test_generated_summary_without_section(self):
        cv = extract_cv_data("Bachelor of Science\nPython and Docker", today=TODAY)
        assert "skilled in python" in cv.summary
        assert "bachelor degree" in cv.summary

    def test_key_phrases_need_repeats(self, cv):
        assert "python developer" in cv.key_phrases


class TestEdgeCases:
    def test_empty_text(self):
        cv = extract_cv_data("   ")
        assert cv.personal_info.name is None
        assert cv.work_experience == []
        assert cv.total_experience_years == 0.0

    def test_sections_split_on_headings(self):
        sections = split_sections("Intro\nSkills:\nPython\nKinh nghiệm\nAcme")
        assert sections["header"] == ["Intro"]
        assert sections["skills"] == ["Python"]
        assert sections["experience"] == ["Acme"]

    def test_to_dict_serializes_dates(self, cv):
        data = cv.to_dict()
        assert data["work_experience"][0]["start_date"] == "2020-01-01"
        assert data["work_experience"][0]["end_date"] is None
