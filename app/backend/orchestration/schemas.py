"""
Typed boundaries of the orchestration pipeline.

Caller input (repositories, free-text profile fields) and model output
(categorization, structured CV) are both parsed into pydantic models as soon
as they arrive. Model output that does not fit the schema is rejected with
ResponseValidationError instead of flowing inward half-typed.
"""
import json
import logging
import re
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import ResponseValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# Caller input

class RepoDetail(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    full_name: str = Field(min_length=1, max_length=300)
    html_url: str
    description: Optional[str] = None
    language: Optional[str] = None
    languages: Dict[str, int] = Field(default_factory=dict)
    topics: List[str] = Field(default_factory=list)
    stargazers_count: int = 0
    forks_count: int = 0
    pushed_at: Optional[str] = None
    fork: bool = False
    readme: Optional[str] = None

    @field_validator("html_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not re.match(r"^https?://\S+$", v):
            raise ValueError("html_url must be an http(s) URL")
        return v


class CategoryRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    repoNames: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)


# Model output

class _StrictModel(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")


class RoleOut(_StrictModel):
    title: str
    description: str
    repos: List[str]
    skills: List[str]


class CategorizationOut(_StrictModel):
    summary: str
    roles: List[RoleOut] = Field(min_length=1)


class SkillCategoryOut(_StrictModel):
    category: str
    items: List[str]


class ExperienceOut(_StrictModel):
    title: str
    organization: str
    startDate: str
    endDate: str
    bullets: List[str]
    technologies: List[str]
    repoUrl: str = ""


class CvOut(_StrictModel):
    summary: str
    skills: List[SkillCategoryOut]
    experience: List[ExperienceOut]
    certifications: List[str] = Field(default_factory=list)


_FENCE_RE = re.compile(r"```(?:json)?\s*\n?", re.IGNORECASE)


def strip_code_fences(content: str) -> str:
    return _FENCE_RE.sub("", content).strip()


def parse_model_json(content: str, schema: Type[M]) -> M:
    """Strip code fences, parse JSON and validate it against schema. No coercion, no partial results."""
    cleaned = strip_code_fences(content)
    try:
        json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error("AI response is not valid JSON (%s). Raw response: %s", e, content)
        raise ResponseValidationError("The AI response was not valid JSON", raw=content)

    try:
        return schema.model_validate_json(cleaned)
    except ValidationError as e:
        logger.error(
            "AI response does not match %s schema: %s. Raw response: %s",
            schema.__name__, e.errors(include_url=False), content,
        )
        raise ResponseValidationError("The AI response did not match the expected structure", raw=content)
