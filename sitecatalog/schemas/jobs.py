from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from sitecatalog.core.urls import validate_seed_url

JobStatus = Literal["pending", "analyzing", "checking", "fetching_meta", "completed", "failed"]


class JobCreate(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return validate_seed_url(value)


class JobOut(BaseModel):
    id: str
    target_url: str
    status: JobStatus
    progress: int = Field(default=0, ge=0, le=100)
    error_message: str | None = None
    total_urls: int = 0
    valid_urls: int = 0
    created_at: datetime
    updated_at: datetime


class AnalysisOut(BaseModel):
    job_id: str
    status: JobStatus
    reason: str
    urls_found: int = 0
    valid_urls: int = 0
    invalid_urls: int = 0
    confidences: dict[str, float] = Field(default_factory=dict)
