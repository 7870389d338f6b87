# -*- coding: utf-8 -*-
"""
Data Templates
Template registry and the default Faker-backed generators for mock data
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from faker import Faker

from engine_errors import ValidationError
from mock_data_models import MockDataType, coerce_data_type

logger = logging.getLogger(__name__)

# Fixed window so seeded output does not depend on the current date
DATE_WINDOW_START = date(2010, 1, 1)
DATE_WINDOW_END = date(2024, 12, 31)


@dataclass
class GeneratorConfig:
    """Configuration a template generator is invoked with"""
    seed: Optional[Any] = None
    locale: str = "en_US"
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    index: int = 0


Generator = Callable[[GeneratorConfig], Awaitable[Any]]


@dataclass
class DataTemplate:
    id: str
    name: str
    type: MockDataType
    category: str
    schema: Dict[str, Any]
    generator: Generator
    examples: List[Any] = field(default_factory=list)

    def __post_init__(self):
        self.type = coerce_data_type(self.type)
        if not self.id:
            raise ValidationError("template_id_required", "Template id is required")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "category": self.category,
            "schema": self.schema,
            "examples": self.examples,
        }


class TemplateRegistry:
    """Templates addressable by id or by (type, category)"""

    def __init__(self, templates: Optional[List[DataTemplate]] = None):
        self._templates: Dict[str, DataTemplate] = {}
        self._lock = threading.RLock()
        for template in templates or []:
            self.register(template)

    def register(self, template: DataTemplate) -> DataTemplate:
        with self._lock:
            if template.id in self._templates:
                logger.info(f"Replacing template {template.id}")
            self._templates[template.id] = template
        return template

    def get(self, template_id: str) -> Optional[DataTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def find(self, data_type, category: Optional[str] = None) -> Optional[DataTemplate]:
        """First template of the given type, preferring an exact category match"""
        data_type = coerce_data_type(data_type)
        with self._lock:
            candidates = [t for t in self._templates.values() if t.type == data_type]
        if category is not None:
            for template in candidates:
                if template.category == category:
                    return template
            return None
        return candidates[0] if candidates else None

    def list(self, data_type=None) -> List[DataTemplate]:
        with self._lock:
            templates = list(self._templates.values())
        if data_type is not None:
            data_type = coerce_data_type(data_type)
            templates = [t for t in templates if t.type == data_type]
        return templates

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)


def build_faker(config: GeneratorConfig) -> Faker:
    """Faker instance for one generated item; seeded output is reproducible"""
    fake = Faker(config.locale)
    if config.seed is not None:
        fake.seed_instance(f"{config.seed}:{config.index}")
    return fake


def _date(fake: Faker) -> str:
    return fake.date_between(start_date=DATE_WINDOW_START, end_date=DATE_WINDOW_END).isoformat()


SKILLS = [
    "Python", "TypeScript", "Go", "SQL", "Kubernetes", "AWS", "React",
    "Machine Learning", "Data Analysis", "Project Management", "Docker", "GraphQL",
]


async def generate_cv(config: GeneratorConfig) -> Dict[str, Any]:
    fake = build_faker(config)
    return {
        "first_name": fake.first_name(),
        "last_name": fake.last_name(),
        "email": fake.email(),
        "phone": fake.phone_number(),
        "title": fake.job(),
        "summary": fake.paragraph(nb_sentences=3),
        "experience": [
            {
                "company": fake.company(),
                "position": fake.job(),
                "start_date": _date(fake),
                "description": fake.sentence(nb_words=12),
            }
            for _ in range(fake.random_int(1, 4))
        ],
        "skills": fake.random_elements(SKILLS, length=5, unique=True),
        "education": [
            {
                "institution": f"{fake.city()} University",
                "degree": fake.random_element(["BSc", "MSc", "PhD", "BA", "MBA"]),
                "graduation_year": fake.random_int(1990, 2024),
            }
        ],
    }


async def generate_user_profile(config: GeneratorConfig) -> Dict[str, Any]:
    fake = build_faker(config)
    return {
        "id": fake.uuid4(),
        "username": fake.user_name(),
        "email": fake.email(),
        "full_name": fake.name(),
        "avatar": fake.image_url(),
        "created_at": _date(fake),
        "preferences": {
            "theme": fake.random_element(["light", "dark"]),
            "language": config.locale.split("_")[0],
            "notifications": fake.boolean(),
        },
    }


async def generate_job_description(config: GeneratorConfig) -> Dict[str, Any]:
    fake = build_faker(config)
    salary_min = fake.random_int(40, 120) * 1000
    return {
        "title": fake.job(),
        "company": fake.company(),
        "location": f"{fake.city()}, {fake.country()}",
        "remote": fake.boolean(),
        "description": fake.paragraph(nb_sentences=4),
        "requirements": [fake.sentence(nb_words=8) for _ in range(fake.random_int(3, 6))],
        "skills": fake.random_elements(SKILLS, length=4, unique=True),
        "salary_range": {"min": salary_min, "max": salary_min + fake.random_int(10, 60) * 1000},
        "posted_at": _date(fake),
    }


async def generate_ai_response(config: GeneratorConfig) -> Dict[str, Any]:
    fake = build_faker(config)
    return {
        "id": fake.uuid4(),
        "model": fake.random_element(["analysis-small", "analysis-large"]),
        "prompt": fake.sentence(nb_words=10),
        "response": fake.paragraph(nb_sentences=5),
        "confidence": fake.random_int(0, 1000) / 1000,
        "tokens_used": fake.random_int(50, 4000),
        "latency_ms": fake.random_int(100, 5000),
    }


async def generate_multimedia(config: GeneratorConfig) -> Dict[str, Any]:
    fake = build_faker(config)
    return {
        "id": fake.uuid4(),
        "title": fake.catch_phrase(),
        "media_type": "audio",
        "format": fake.random_element(["mp3", "wav", "ogg"]),
        "duration_seconds": fake.random_int(60, 7200),
        "url": fake.url() + fake.file_name(category="audio"),
        "transcript": fake.paragraph(nb_sentences=6),
        "published_at": _date(fake),
    }


def _object_schema(required: List[str], properties: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


def default_templates() -> List[DataTemplate]:
    return [
        DataTemplate(
            id="cv-template",
            name="Professional CV",
            type=MockDataType.CV,
            category="technology",
            schema=_object_schema(
                ["first_name", "last_name", "email", "title", "experience", "skills"],
                {
                    "first_name": {"type": "string"},
                    "last_name": {"type": "string"},
                    "email": {"type": "string"},
                    "phone": {"type": "string"},
                    "title": {"type": "string"},
                    "summary": {"type": "string"},
                    "experience": {"type": "array", "items": {"type": "object"}},
                    "skills": {"type": "array", "items": {"type": "string"}},
                    "education": {"type": "array", "items": {"type": "object"}},
                },
            ),
            generator=generate_cv,
        ),
        DataTemplate(
            id="user-profile-template",
            name="User Profile",
            type=MockDataType.USER_PROFILE,
            category="general",
            schema=_object_schema(
                ["id", "username", "email"],
                {
                    "id": {"type": "string"},
                    "username": {"type": "string"},
                    "email": {"type": "string"},
                    "full_name": {"type": "string"},
                    "avatar": {"type": "string"},
                    "preferences": {"type": "object"},
                },
            ),
            generator=generate_user_profile,
        ),
        DataTemplate(
            id="job-description-template",
            name="Job Description",
            type=MockDataType.JOB_DESCRIPTION,
            category="technology",
            schema=_object_schema(
                ["title", "company", "description"],
                {
                    "title": {"type": "string"},
                    "company": {"type": "string"},
                    "description": {"type": "string"},
                    "requirements": {"type": "array", "items": {"type": "string"}},
                    "salary_range": {"type": "object"},
                },
            ),
            generator=generate_job_description,
        ),
        DataTemplate(
            id="ai-response-template",
            name="AI Analysis Response",
            type=MockDataType.AI_RESPONSE,
            category="analysis",
            schema=_object_schema(
                ["id", "response", "confidence"],
                {
                    "id": {"type": "string"},
                    "response": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "tokens_used": {"type": "integer"},
                },
            ),
            generator=generate_ai_response,
        ),
        DataTemplate(
            id="multimedia-template",
            name="Podcast Episode",
            type=MockDataType.MULTIMEDIA,
            category="podcast",
            schema=_object_schema(
                ["id", "title", "format", "duration_seconds"],
                {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "format": {"type": "string"},
                    "duration_seconds": {"type": "integer", "minimum": 0},
                },
            ),
            generator=generate_multimedia,
        ),
    ]


def default_template_registry() -> TemplateRegistry:
    return TemplateRegistry(default_templates())
