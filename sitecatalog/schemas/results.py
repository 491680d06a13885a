from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UrlSource = Literal["gemini", "gpt", "sitemap", "merged"]
ResultSortBy = Literal["url", "status_code", "source"]
SortDir = Literal["asc", "desc"]
ExportFormat = Literal["csv", "json"]


class UrlResultOut(BaseModel):
    id: str
    job_id: str
    url: str
    title: str | None = None
    description: str | None = None
    status_code: int | None = None
    is_valid: bool | None = None
    source: UrlSource
    error_message: str | None = None
    created_at: datetime


class SourceCounts(BaseModel):
    gemini: int = 0
    gpt: int = 0
    sitemap: int = 0
    merged: int = 0


class ResultStats(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    by_source: SourceCounts = Field(default_factory=SourceCounts)


class JobResultsOut(BaseModel):
    job_id: str
    job_status: str
    results: list[UrlResultOut] = Field(default_factory=list)
    stats: ResultStats


class UrlResultExport(BaseModel):
    """Export row; serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    title: str | None = None
    description: str | None = None
    status_code: int | None = None
    is_valid: bool | None = None
    source: str
    error_message: str | None = None
