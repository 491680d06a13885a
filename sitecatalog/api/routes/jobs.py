from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from sitecatalog.core.config import Settings, get_settings
from sitecatalog.jobs import orchestrator
from sitecatalog.schemas.jobs import AnalysisOut, JobCreate, JobOut
from sitecatalog.schemas.results import (
    ExportFormat,
    JobResultsOut,
    ResultSortBy,
    ResultStats,
    SortDir,
    SourceCounts,
    UrlResultOut,
    UrlSource,
)
from sitecatalog.services.exporter import MEDIA_TYPES, export_filename, export_results
from sitecatalog.services.guessers import get_guessers
from sitecatalog.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, repository=Depends(get_repository)) -> JobOut:
    try:
        row = await repository.create_job(payload.url)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut(**row)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> list[JobOut]:
    try:
        rows = await repository.list_jobs(limit=settings.jobs_list_limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut(**row) for row in rows]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, repository=Depends(get_repository)) -> JobOut:
    try:
        row = await repository.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobOut(**row)


@router.post("/{job_id}/analyze", response_model=AnalysisOut)
async def analyze_job(
    job_id: str,
    repository=Depends(get_repository),
    guessers=Depends(get_guessers),
    settings: Settings = Depends(get_settings),
) -> AnalysisOut:
    try:
        outcome = await orchestrator.run_site_analysis(
            job_id,
            repository=repository,
            guessers=guessers,
            settings=settings,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    if outcome.reason == "invalid_target_url":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=outcome.error_message)
    if outcome.status == "failed":
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=outcome.error_message)
    return AnalysisOut(**orchestrator.outcome_to_dict(outcome))


@router.get("/{job_id}/results", response_model=JobResultsOut)
async def get_job_results(
    job_id: str,
    valid: bool | None = Query(default=None),
    source: UrlSource | None = Query(default=None),
    sort: ResultSortBy = Query(default="url"),
    order: SortDir = Query(default="asc"),
    repository=Depends(get_repository),
) -> JobResultsOut:
    try:
        job = await repository.get_job(job_id)
        rows = await repository.list_url_results(
            job_id,
            is_valid=valid,
            source=source,
            sort_by=sort,
            sort_dir=order,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return JobResultsOut(
        job_id=job_id,
        job_status=job["status"],
        results=[UrlResultOut(**row) for row in rows],
        stats=_build_stats(rows),
    )


@router.get("/{job_id}/export")
async def export_job_results(
    job_id: str,
    export_format: ExportFormat = Query(default="csv", alias="format"),
    repository=Depends(get_repository),
) -> Response:
    try:
        job = await repository.get_job(job_id)
        if job["status"] != "completed":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="job has not completed yet")
        rows = await repository.list_url_results(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if not rows:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no results to export")

    filename = export_filename(job["target_url"], export_format)
    return Response(
        content=export_results(rows, export_format),
        media_type=MEDIA_TYPES[export_format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _build_stats(rows: list[dict[str, Any]]) -> ResultStats:
    by_source = SourceCounts()
    for row in rows:
        source = row.get("source")
        if source in SourceCounts.model_fields:
            setattr(by_source, source, getattr(by_source, source) + 1)
    valid = sum(1 for row in rows if row.get("is_valid"))
    return ResultStats(total=len(rows), valid=valid, invalid=len(rows) - valid, by_source=by_source)
