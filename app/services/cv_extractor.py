"""
CV Extractor - structured candidate facts from unstructured résumé text

Pattern and keyword driven; no model calls. Every field is optional and
each extractor runs independently, so a failure in one (say, an unusual
date format in the experience section) leaves the rest populated.

Pipeline:
    1. Personal info: name (top lines), email, phone (VN + international), location
    2. Sections split on headings (experience, education, skills, ...)
    3. Work experience: entries anchored on date ranges, parsed with
       python-dateutil, sorted most-recent first
    4. Education: degree/institution/field/graduation year, most-recent first
    5. Skills: taxonomy matching with alias collapse (app.services.skill_taxonomy)
    6. Totals: experience months from the union of employment spans

Usage:
    from app.services.cv_extractor import extract_cv_data
    data = extract_cv_data(resume_text)
    data.total_experience_years   # 5.5
    data.skills.technical         # ["python", "django", "aws"]
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from app.services.skill_taxonomy import TECHNICAL_CATEGORIES, extract_skills_with_synonyms

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
VN_PHONE_PATTERN = re.compile(r"(?<!\d)(?:\+84|84|0)?[1-9][0-9]{8,9}(?!\d)")
INTL_PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{7,}\d")

SECTION_HEADINGS: Dict[str, List[str]] = {
    "summary": [
        "summary", "professional summary", "profile", "objective", "career objective",
        "about me", "mục tiêu", "mục tiêu nghề nghiệp", "giới thiệu",
    ],
    "experience": [
        "experience", "work experience", "professional experience", "work history",
        "employment", "employment history", "career history", "kinh nghiệm",
        "kinh nghiệm làm việc",
    ],
    "education": [
        "education", "academic background", "academic", "qualifications",
        "học vấn", "trình độ học vấn",
    ],
    "skills": ["skills", "technical skills", "core skills", "competencies", "kỹ năng"],
    "projects": ["projects", "personal projects", "dự án"],
    "certifications": ["certifications", "certificates", "licenses", "chứng chỉ"],
    "languages": ["languages", "ngoại ngữ"],
}

MONTH_NAMES = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"
DATE_TOKEN = rf"(?:\d{{1,2}}[/.-]\d{{4}}|{MONTH_NAMES}\s+\d{{4}}|\d{{4}})"
CURRENT_TOKENS = r"(?:present|current|now|today|hiện tại|nay)"
DATE_RANGE_PATTERN = re.compile(
    rf"(?P<start>{DATE_TOKEN})\s*(?:-|–|—|to|until|đến)\s*(?P<end>{DATE_TOKEN}|{CURRENT_TOKENS})",
    re.IGNORECASE,
)
YEAR_PATTERN = re.compile(r"\b(19|20)\d{2}\b")

DEGREE_LEVELS: List[Tuple[str, List[str]]] = [
    ("phd", ["phd", "ph.d", "doctorate", "doctor of", "tiến sĩ"]),
    ("master", ["master", "msc", "m.sc", "mba", "m.eng", "thạc sĩ"]),
    ("bachelor", ["bachelor", "bsc", "b.sc", "b.eng", "b.a.", "engineer's degree", "cử nhân", "kỹ sư"]),
    ("associate", ["associate", "diploma", "cao đẳng"]),
    ("high_school", ["high school", "secondary school", "trung học"]),
]
EDUCATION_RANK = {"high_school": 1, "associate": 2, "bachelor": 3, "master": 4, "phd": 5}

INSTITUTION_KEYWORDS = [
    "university", "college", "institute", "academy", "school", "polytechnic",
    "đại học", "học viện", "trường",
]

LOCATION_LABELS = re.compile(r"^\s*(?:address|location|địa chỉ|city)\s*[:\-]\s*(.+)$", re.IGNORECASE)
KNOWN_CITIES = ["ho chi minh", "hồ chí minh", "hanoi", "hà nội", "da nang", "đà nẵng", "hai phong", "can tho"]

NAME_STOPWORDS = {"curriculum", "vitae", "resume", "cv", "profile", "contact"}

KEY_PHRASE_STOPWORDS = {
    "the", "and", "for", "with", "from", "into", "that", "this", "was", "were", "are", "our",
    "to", "of", "in", "on", "at", "a", "an", "as", "by", "or", "is", "be", "my", "i",
    "và", "của", "các", "cho", "với",
}

TITLE_COMPANY_SEPARATORS = re.compile(r"\s+at\s+|\s*\|\s*|\s+-\s+|\s+–\s+|,\s*|\s+@\s+", re.IGNORECASE)


@dataclass
class PersonalInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None


@dataclass
class WorkExperience:
    title: Optional[str] = None
    company: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_current: bool = False
    duration_months: int = 0
    description: str = ""


@dataclass
class EducationEntry:
    degree: Optional[str] = None
    level: Optional[str] = None
    field: Optional[str] = None
    institution: Optional[str] = None
    graduation_year: Optional[int] = None


@dataclass
class ExtractedSkills:
    technical: List[str] = field(default_factory=list)
    programming_languages: List[str] = field(default_factory=list)
    frameworks: List[str] = field(default_factory=list)
    tools: List[str] = field(default_factory=list)
    soft: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    certifications: List[str] = field(default_factory=list)


@dataclass
class ProcessedCvData:
    """
    Structured résumé facts. Any field may be empty.

    work_experience and education are ordered most-recent first.
    """
    personal_info: PersonalInfo = field(default_factory=PersonalInfo)
    work_experience: List[WorkExperience] = field(default_factory=list)
    education: List[EducationEntry] = field(default_factory=list)
    skills: ExtractedSkills = field(default_factory=ExtractedSkills)
    total_experience_months: int = 0
    total_experience_years: float = 0.0
    summary: Optional[str] = None
    extracted_dates: List[str] = field(default_factory=list)
    key_phrases: List[str] = field(default_factory=list)

    @property
    def current_title(self) -> Optional[str]:
        return self.work_experience[0].title if self.work_experience else None

    @property
    def current_company(self) -> Optional[str]:
        return self.work_experience[0].company if self.work_experience else None

    @property
    def highest_education(self) -> Optional[EducationEntry]:
        ranked = [e for e in self.education if e.level]
        if not ranked:
            return self.education[0] if self.education else None
        return max(ranked, key=lambda e: (EDUCATION_RANK.get(e.level, 0), e.graduation_year or 0))

    def to_dict(self) -> dict:
        data = asdict(self)
        for entry in data["work_experience"]:
            for key in ("start_date", "end_date"):
                if entry[key] is not None:
                    entry[key] = entry[key].isoformat()
        return data


def _safe(extractor: Callable[..., T], default: T, *args) -> T:
    try:
        return extractor(*args)
    except Exception as e:
        logger.warning(f"CV extraction step {extractor.__name__} failed: {e}")
        return default


# ==================== Sections ====================

def _heading_of(line: str) -> Optional[str]:
    normalized = line.strip().strip(":").strip().lower()
    if not normalized or len(normalized) > 40:
        return None
    for section, headings in SECTION_HEADINGS.items():
        if normalized in headings:
            return section
    return None


def split_sections(text: str) -> Dict[str, List[str]]:
    """Group lines under their section heading; lines before any heading go to "header"."""
    sections: Dict[str, List[str]] = {"header": []}
    current = "header"
    for line in text.split("\n"):
        heading = _heading_of(line)
        if heading:
            current = heading
            sections.setdefault(current, [])
            continue
        if line.strip():
            sections.setdefault(current, []).append(line.strip())
    return sections


# ==================== Personal Info ====================

def _looks_like_name(line: str) -> bool:
    words = line.split()
    if not 2 <= len(words) <= 4:
        return False
    if any(w.lower().strip(",.") in NAME_STOPWORDS for w in words):
        return False
    return all(w.isalpha() and w[0].isupper() for w in words)


def extract_name(lines: List[str]) -> Optional[str]:
    for line in lines[:5]:
        candidate = line.strip()
        if _heading_of(candidate):
            continue
        if _looks_like_name(candidate):
            if candidate.isupper():
                return candidate.title()
            return candidate
    return None


def extract_phone(text: str) -> Optional[str]:
    compact = re.sub(r"(?<=\d)[\s.-](?=\d)", "", text)
    match = VN_PHONE_PATTERN.search(compact)
    if match:
        return match.group(0)
    match = INTL_PHONE_PATTERN.search(text)
    if match and len(re.sub(r"\D", "", match.group(0))) >= 9:
        return match.group(0).strip()
    return None


def extract_location(lines: List[str]) -> Optional[str]:
    for line in lines:
        match = LOCATION_LABELS.match(line)
        if match:
            return match.group(1).strip()
    for line in lines:
        lower = line.lower()
        if any(city in lower for city in KNOWN_CITIES) and len(line) < 120:
            return line.strip()
    return None


def extract_personal_info(text: str) -> PersonalInfo:
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    email = EMAIL_PATTERN.search(text)
    return PersonalInfo(
        name=_safe(extract_name, None, lines),
        email=email.group(0) if email else None,
        phone=_safe(extract_phone, None, text),
        location=_safe(extract_location, None, lines),
    )


# ==================== Dates ====================

def parse_date_token(token: str, today: Optional[date] = None) -> Tuple[Optional[date], bool]:
    """
    Parse one side of a date range.

    Returns:
        (date or None, is_current)
    """
    today = today or date.today()
    value = token.strip().lower().rstrip(".")
    if re.fullmatch(CURRENT_TOKENS, value, re.IGNORECASE):
        return today, True

    numeric = re.fullmatch(r"(\d{1,2})[/.-](\d{4})", value)
    if numeric:
        month, year = int(numeric.group(1)), int(numeric.group(2))
        if 1 <= month <= 12:
            return date(year, month, 1), False
        return None, False

    if re.fullmatch(r"\d{4}", value):
        return date(int(value), 1, 1), False

    try:
        parsed = date_parser.parse(value, default=datetime(today.year, 1, 1))
        return parsed.date().replace(day=1), False
    except (ValueError, OverflowError):
        return None, False


def months_between(start: date, end: date) -> int:
    delta = relativedelta(end, start)
    return max(0, delta.years * 12 + delta.months)


def _valid_year(year: int) -> bool:
    return 1990 <= year <= date.today().year + 1


def extract_dates(text: str) -> List[str]:
    """ISO dates of every range endpoint plus standalone years, 1990..next year."""
    found = []
    for match in DATE_RANGE_PATTERN.finditer(text):
        for token in (match.group("start"), match.group("end")):
            parsed, is_current = parse_date_token(token)
            if parsed and not is_current and _valid_year(parsed.year):
                found.append(parsed.isoformat())
    for match in YEAR_PATTERN.finditer(text):
        year = int(match.group(0))
        if _valid_year(year):
            found.append(date(year, 1, 1).isoformat())
    return sorted(set(found))


# ==================== Experience ====================

def _split_title_company(header: str) -> Tuple[Optional[str], Optional[str]]:
    header = header.strip(" -–|,:•*")
    if not header:
        return None, None
    parts = [p.strip(" -–|,:•*") for p in TITLE_COMPANY_SEPARATORS.split(header) if p.strip(" -–|,:•*")]
    if len(parts) >= 2:
        return parts[0], parts[1]
    return parts[0], None


def _is_bullet(line: str) -> bool:
    return line[:1] in "-•*–▪●"


def parse_experience_section(lines: List[str], today: Optional[date] = None) -> List[WorkExperience]:
    """
    Parse entries anchored on date-range lines.

    Header text is taken from the date line itself or, when the date stands
    alone, from the line above it.
    """
    anchors = [i for i, line in enumerate(lines) if DATE_RANGE_PATTERN.search(line)]
    header_lines = set()
    entries = []

    for n, i in enumerate(anchors):
        line = lines[i]
        match = DATE_RANGE_PATTERN.search(line)
        header = (line[:match.start()] + " " + line[match.end():]).strip(" ()-–|,:")
        if not header and i > 0 and (i - 1) not in anchors and not _is_bullet(lines[i - 1]):
            header = lines[i - 1]
            header_lines.add(i - 1)

        start, _ = parse_date_token(match.group("start"), today)
        end, is_current = parse_date_token(match.group("end"), today)
        title, company = _split_title_company(header)

        entries.append((i, WorkExperience(
            title=title,
            company=company,
            start_date=start,
            end_date=None if is_current else end,
            is_current=is_current,
            duration_months=months_between(start, end) if start and end else 0,
        )))

    for n, (i, entry) in enumerate(entries):
        stop = entries[n + 1][0] if n + 1 < len(entries) else len(lines)
        description = [
            lines[j].lstrip("-•*–▪● ").strip()
            for j in range(i + 1, stop)
            if j not in header_lines
        ]
        entry.description = "\n".join(d for d in description if d)

    experiences = [entry for _, entry in entries]
    experiences.sort(key=lambda e: (e.is_current, e.end_date or date.max, e.start_date or date.min), reverse=True)
    return experiences


def total_experience_months(experiences: List[WorkExperience], today: Optional[date] = None) -> int:
    """Months covered by the union of employment spans (overlaps counted once)."""
    today = today or date.today()
    spans = sorted(
        (e.start_date, e.end_date or today)
        for e in experiences
        if e.start_date and (e.end_date or today) >= e.start_date
    )
    total = 0
    current_start, current_end = None, None
    for start, end in spans:
        if current_end is None or start > current_end:
            if current_end is not None:
                total += months_between(current_start, current_end)
            current_start, current_end = start, end
        else:
            current_end = max(current_end, end)
    if current_end is not None:
        total += months_between(current_start, current_end)
    return total


# ==================== Education ====================

def degree_level(text: str) -> Optional[str]:
    lower = text.lower()
    for level, keywords in DEGREE_LEVELS:
        if any(re.search(r"(?<!\w)" + re.escape(k) + r"(?!\w)", lower) for k in keywords):
            return level
    return None


def _has_institution(line: str) -> bool:
    lower = line.lower()
    return any(keyword in lower for keyword in INSTITUTION_KEYWORDS)


def _field_of_study(line: str) -> Optional[str]:
    match = re.search(r"\b(?:in|of)\s+([A-Z][A-Za-z&/ ]{2,60})", line)
    if match:
        value = re.split(r"\s*[,|(]|\s+-\s+|\s+\d", match.group(1))[0].strip()
        if value and not value.lower().startswith(("science", "arts", "engineering")) or len(value.split()) > 1:
            return value
    return None


def parse_education_section(lines: List[str]) -> List[EducationEntry]:
    entries: List[EducationEntry] = []
    current: Optional[EducationEntry] = None

    for line in lines:
        level = degree_level(line)
        institution = _has_institution(line)
        if not level and not institution and current is None:
            continue

        starts_new = current is None or (level and current.degree) or (institution and current.institution and not level)
        if starts_new and (level or institution):
            current = EducationEntry()
            entries.append(current)

        if level and not current.degree:
            current.degree = line.strip(" -•*")
            current.level = level
            current.field = _field_of_study(line)
        if institution and not current.institution:
            current.institution = line.strip(" -•*") if not level else _institution_part(line)

        years = [int(m.group(0)) for m in YEAR_PATTERN.finditer(line)]
        years = [y for y in years if _valid_year(y)]
        if years:
            current.graduation_year = max(years + [current.graduation_year or 0])

    entries.sort(key=lambda e: e.graduation_year or 0, reverse=True)
    return entries


def _institution_part(line: str) -> str:
    for part in re.split(r"\s*[,|]\s*|\s+-\s+|\s+at\s+", line):
        if _has_institution(part):
            return part.strip(" -•*")
    return line.strip(" -•*")


# ==================== Skills ====================

def extract_skills(text: str, sections: Dict[str, List[str]]) -> ExtractedSkills:
    found = extract_skills_with_synonyms(text)

    certifications = [
        line.lstrip("-•* ").strip() for line in sections.get("certifications", [])
    ]
    for line in text.split("\n"):
        if "certified" in line.lower() and line.strip() not in certifications:
            certifications.append(line.strip())

    return ExtractedSkills(
        technical=[s for category in TECHNICAL_CATEGORIES for s in found.get(category, [])],
        programming_languages=found.get("programming_languages", []),
        frameworks=found.get("frameworks", []),
        tools=found.get("tools", []) + found.get("cloud_devops", []),
        soft=found.get("soft", []),
        languages=found.get("spoken_languages", []),
        certifications=certifications[:20],
    )


def extract_key_phrases(text: str, limit: int = 10) -> List[str]:
    words = [w for w in re.findall(r"[^\W\d_][\w+#.-]*", text.lower()) if len(w) > 1]
    bigrams = Counter(
        f"{a} {b}" for a, b in zip(words, words[1:])
        if a not in KEY_PHRASE_STOPWORDS and b not in KEY_PHRASE_STOPWORDS
    )
    return [phrase for phrase, count in bigrams.most_common(limit) if count > 1]


def build_summary(data: ProcessedCvData, sections: Dict[str, List[str]]) -> str:
    if sections.get("summary"):
        return " ".join(sections["summary"])[:500]

    parts = []
    if data.total_experience_years > 0:
        parts.append(f"{data.total_experience_years} years of experience")
    if data.skills.technical:
        parts.append(f"skilled in {', '.join(data.skills.technical[:3])}")
    highest = data.highest_education
    if highest and highest.level:
        parts.append(f"{highest.level.replace('_', ' ')} degree")
    return ", ".join(parts) or "Professional candidate"


# ==================== Entry Point ====================

def extract_cv_data(text: str, today: Optional[date] = None) -> ProcessedCvData:
    """
    Extract structured facts from résumé text.

    Args:
        text: Cleaned résumé text
        today: Reference date for "present" ranges (defaults to today)

    Returns:
        ProcessedCvData, partially populated when parts of the text are unparseable
    """
    data = ProcessedCvData()
    if not text or not text.strip():
        return data

    sections = _safe(split_sections, {"header": text.split("\n")}, text)

    data.personal_info = _safe(extract_personal_info, PersonalInfo(), text)

    experience_lines = sections.get("experience", [])
    data.work_experience = _safe(parse_experience_section, [], experience_lines, today)

    education_lines = sections.get("education") or [
        line for line in text.split("\n") if degree_level(line)
    ]
    data.education = _safe(parse_education_section, [], education_lines)

    data.skills = _safe(extract_skills, ExtractedSkills(), text, sections)
    data.total_experience_months = _safe(total_experience_months, 0, data.work_experience, today)
    data.total_experience_years = round(data.total_experience_months / 12, 1)
    data.extracted_dates = _safe(extract_dates, [], text)
    data.key_phrases = _safe(extract_key_phrases, [], text)
    data.summary = _safe(build_summary, None, data, sections)

    logger.info(
        f"Extracted CV data: {len(data.work_experience)} positions, "
        f"{len(data.education)} education entries, {len(data.skills.technical)} technical skills"
    )
    return data
