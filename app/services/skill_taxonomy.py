"""
Skill Taxonomy - canonical skill names with aliases

Structure: category -> canonical skill -> [aliases]

Aliases collapse to the canonical name, so "k8s", "kubernetes" and "kubectl"
all count as one skill. Matching is case-insensitive on token boundaries
that tolerate symbols used in skill names (c#, c++, next.js, .net).

Categories map onto the CV skill buckets:
    programming_languages → technical + programming languages
    frameworks            → technical + frameworks
    databases, cloud_devops, ai_ml → technical
    tools                 → technical + tools
    soft                  → soft skills
    spoken_languages      → languages
"""

import re
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

SKILLS_TAXONOMY: Dict[str, Dict[str, List[str]]] = {
    "programming_languages": {
        "python": ["python3", "py"],
        "javascript": ["js", "ecmascript", "es6"],
        "typescript": ["ts"],
        "java": ["j2ee", "jakarta ee"],
        "c#": ["csharp", "c sharp"],
        "c++": ["cpp"],
        "php": [],
        "ruby": [],
        "go": ["golang"],
        "rust": ["rustlang"],
        "swift": [],
        "kotlin": [],
        "scala": [],
        "matlab": [],
        "sql": ["t-sql", "pl/sql"],
        "html": ["html5"],
        "css": ["css3", "sass", "scss", "less"],
        "dart": [],
    },
    "frameworks": {
        "react": ["reactjs", "react.js"],
        "next.js": ["nextjs"],
        "angular": ["angularjs"],
        "vue": ["vuejs", "vue.js"],
        "nuxt.js": ["nuxt", "nuxtjs"],
        "svelte": ["sveltekit"],
        "node.js": ["nodejs", "node"],
        "express": ["expressjs", "express.js"],
        "nest.js": ["nestjs"],
        "fastify": [],
        "django": ["django rest framework", "drf"],
        "flask": [],
        "fastapi": [],
        "spring": ["spring boot", "springboot", "spring mvc"],
        "laravel": [],
        "symfony": [],
        "rails": ["ruby on rails", "ror"],
        ".net": ["dotnet", "asp.net", "asp.net core"],
        "flutter": [],
        "react native": [],
    },
    "databases": {
        "postgresql": ["postgres", "psql"],
        "mysql": ["mariadb"],
        "mongodb": ["mongo"],
        "redis": [],
        "elasticsearch": ["elastic search", "opensearch"],
        "cassandra": [],
        "dynamodb": [],
        "sqlite": [],
        "oracle database": ["oracle db"],
        "sql server": ["mssql", "ms sql"],
    },
    "cloud_devops": {
        "aws": ["amazon web services", "ec2", "s3", "lambda"],
        "azure": ["microsoft azure"],
        "gcp": ["google cloud", "google cloud platform"],
        "docker": ["dockerfile", "containers"],
        "kubernetes": ["k8s", "kubectl", "helm"],
        "terraform": ["infrastructure as code"],
        "ansible": [],
        "jenkins": [],
        "gitlab ci": ["gitlab"],
        "github actions": [],
        "ci/cd": ["cicd", "continuous integration"],
        "linux": ["ubuntu", "centos"],
    },
    "ai_ml": {
        "machine learning": ["ml"],
        "deep learning": ["neural networks"],
        "nlp": ["natural language processing"],
        "computer vision": ["image recognition"],
        "pytorch": ["torch"],
        "tensorflow": ["keras"],
        "scikit-learn": ["sklearn"],
        "pandas": [],
        "numpy": [],
    },
    "tools": {
        "git": ["github", "bitbucket"],
        "jira": [],
        "webpack": [],
        "vite": [],
        "babel": [],
        "eslint": [],
        "jest": [],
        "cypress": [],
        "selenium": [],
        "postman": [],
        "figma": [],
        "kafka": ["apache kafka"],
        "rabbitmq": [],
        "graphql": [],
        "rest api": ["restful", "rest apis", "restful api"],
        "microservices": ["microservice"],
    },
    "soft": {
        "leadership": ["team lead", "leading teams"],
        "communication": ["communication skills"],
        "teamwork": ["team player", "collaboration"],
        "problem solving": ["problem-solving"],
        "analytical thinking": ["analytical skills"],
        "creativity": [],
        "adaptability": [],
        "time management": [],
        "project management": [],
        "mentoring": ["mentorship", "coaching"],
        "agile": ["scrum", "kanban"],
    },
    "spoken_languages": {
        "english": ["tiếng anh"],
        "vietnamese": ["tiếng việt"],
        "chinese": ["mandarin"],
        "japanese": [],
        "korean": [],
        "french": [],
        "german": [],
        "spanish": [],
        "italian": [],
    },
}

TECHNICAL_CATEGORIES = ["programming_languages", "frameworks", "databases", "cloud_devops", "ai_ml", "tools"]

# Matched case-sensitively to avoid everyday English ("go", "less", "node", ...)
CASE_SENSITIVE_TERMS = {"go": "Go", "less": "LESS", "node": "Node", "ts": "TS", "js": "JS", "py": "Py", "ml": "ML"}


def _term_pattern(term: str) -> str:
    return r"(?<![\w.#+/-])" + re.escape(term) + r"(?![\w#+]|\.\w)"


@lru_cache(maxsize=1)
def _compiled_taxonomy() -> List[Tuple[str, str, re.Pattern]]:
    compiled = []
    for category, skills in SKILLS_TAXONOMY.items():
        for canonical, aliases in skills.items():
            for term in [canonical, *aliases]:
                if term in CASE_SENSITIVE_TERMS:
                    pattern = re.compile(_term_pattern(CASE_SENSITIVE_TERMS[term]))
                else:
                    pattern = re.compile(_term_pattern(term), re.IGNORECASE)
                compiled.append((category, canonical, pattern))
    return compiled


@lru_cache(maxsize=1)
def _alias_index() -> Dict[str, str]:
    index = {}
    for skills in SKILLS_TAXONOMY.values():
        for canonical, aliases in skills.items():
            index[canonical] = canonical
            for alias in aliases:
                index.setdefault(alias, canonical)
    return index


def normalize_skill(name: str) -> str:
    """Canonical name for a skill or alias; unknown skills come back lowercased."""
    key = re.sub(r"\s+", " ", (name or "").strip().lower())
    return _alias_index().get(key, key)


def category_of(skill: str) -> Optional[str]:
    canonical = normalize_skill(skill)
    for category, skills in SKILLS_TAXONOMY.items():
        if canonical in skills:
            return category
    return None


def extract_skills_with_synonyms(text: str) -> Dict[str, List[str]]:
    """
    Extract skills from text using the taxonomy with alias matching.

    Args:
        text: Text to search (CV or job description)

    Returns:
        Dict mapping category names to canonical skills in taxonomy order,
        e.g. {"programming_languages": ["python"], "cloud_devops": ["aws"]}
    """
    if not text:
        return {}

    found: Dict[str, List[str]] = {}
    for category, canonical, pattern in _compiled_taxonomy():
        if canonical in found.get(category, []):
            continue
        if pattern.search(text):
            found.setdefault(category, []).append(canonical)
    return found


def extract_technical_skills(text: str) -> List[str]:
    """Flat list of canonical technical skills found in text."""
    found = extract_skills_with_synonyms(text)
    return [skill for category in TECHNICAL_CATEGORIES for skill in found.get(category, [])]
