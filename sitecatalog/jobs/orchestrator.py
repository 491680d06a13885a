from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
from opentelemetry import trace

from sitecatalog.core.config import Settings
from sitecatalog.core.urls import extract_domain
from sitecatalog.jobs.metadata import PageMetadata
from sitecatalog.jobs.prober import ProbeVerdict, ProgressCallback, check_urls, fetch_metadata_for_urls
from sitecatalog.jobs.reconcile import MergedUrl, reconcile_urls
from sitecatalog.schemas.results import UrlSource
from sitecatalog.services.guessers import EMPTY_GUESS, GuessResult, LLMGuesser, coerce_guess_payload
from sitecatalog.services.repository import (
    Repository,
    RepositoryConflictError,
    RepositoryError,
    UrlResultRecord,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PROGRESS_ANALYZING = 20
PROGRESS_CHECKING = 40
PROGRESS_FETCHING_META = 70
PROGRESS_DONE = 100

INVALID_TARGET_MESSAGE = "invalid target URL"
STORAGE_ERROR_MESSAGE = "failed to save results"
UNEXPECTED_ERROR_MESSAGE = "unexpected error during analysis"


@dataclass(slots=True)
class AnalysisOutcome:
    job_id: str
    status: str
    reason: str
    urls_found: int = 0
    valid_urls: int = 0
    confidences: dict[str, float] = field(default_factory=dict)
    error_message: str | None = None

    @property
    def invalid_urls(self) -> int:
        return self.urls_found - self.valid_urls


async def run_site_analysis(
    job_id: str,
    *,
    repository: Repository,
    guessers: Mapping[UrlSource, LLMGuesser],
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> AnalysisOutcome:
    """Drive one pending job to ``completed`` or ``failed``.

    Raises ``RepositoryNotFoundError`` for unknown jobs and
    ``RepositoryConflictError`` when the job is not pending (or another run
    claimed it first); neither mutates the job. Every other failure after the
    job has been claimed is recorded on the job itself.
    """
    job = await repository.get_job(job_id)
    if job["status"] != "pending":
        raise RepositoryConflictError("job is already running or finished")

    target_url = job["target_url"]
    base_domain = extract_domain(target_url)
    if not base_domain:
        await repository.update_job(
            job_id,
            status="failed",
            error_message=INVALID_TARGET_MESSAGE,
            expected_status="pending",
        )
        return AnalysisOutcome(
            job_id=job_id,
            status="failed",
            reason="invalid_target_url",
            error_message=INVALID_TARGET_MESSAGE,
        )

    await repository.update_job(
        job_id,
        status="analyzing",
        progress=PROGRESS_ANALYZING,
        expected_status="pending",
    )

    with tracer.start_as_current_span("analysis.run") as span:
        span.set_attribute("job.id", job_id)
        span.set_attribute("job.target_domain", base_domain)
        try:
            return await _run_stages(
                job_id,
                target_url=target_url,
                base_domain=base_domain,
                repository=repository,
                guessers=guessers,
                settings=settings,
                client=client,
            )
        except Exception:
            logger.exception("analysis failed unexpectedly job_id=%s", job_id)
            await _mark_failed(repository, job_id, UNEXPECTED_ERROR_MESSAGE)
            return AnalysisOutcome(
                job_id=job_id,
                status="failed",
                reason="unexpected_error",
                error_message=UNEXPECTED_ERROR_MESSAGE,
            )


async def _run_stages(
    job_id: str,
    *,
    target_url: str,
    base_domain: str,
    repository: Repository,
    guessers: Mapping[UrlSource, LLMGuesser],
    settings: Settings,
    client: httpx.AsyncClient | None,
) -> AnalysisOutcome:
    guesses = await _collect_guesses(guessers, target_url)
    confidences = {source: guess.confidence for source, guess in guesses.items()}
    logger.info(
        "guessers finished job_id=%s counts=%s confidences=%s",
        job_id,
        {source: len(guess.urls) for source, guess in guesses.items()},
        confidences,
    )

    if not any(guess.urls for guess in guesses.values()):
        await repository.update_job(
            job_id,
            status="completed",
            progress=PROGRESS_DONE,
            total_urls=0,
            valid_urls=0,
        )
        return AnalysisOutcome(
            job_id=job_id,
            status="completed",
            reason="no_urls_discovered",
            confidences=confidences,
        )

    merged = reconcile_urls({source: list(guess.urls) for source, guess in guesses.items()}, base_domain)
    await repository.update_job(
        job_id,
        status="checking",
        progress=PROGRESS_CHECKING,
        total_urls=len(merged),
    )

    with tracer.start_as_current_span("analysis.check_urls") as span:
        span.set_attribute("urls.count", len(merged))
        verdicts = await check_urls(
            [item.url for item in merged],
            concurrency=settings.validity_concurrency,
            timeout_seconds=settings.probe_timeout_seconds,
            user_agent=settings.probe_user_agent,
            client=client,
            on_progress=_progress_logger(job_id, "checked"),
        )
    verdicts_by_url = {verdict.url: verdict for verdict in verdicts}
    valid_urls = [item.url for item in merged if _is_valid(verdicts_by_url.get(item.url))]

    await repository.update_job(job_id, status="fetching_meta", progress=PROGRESS_FETCHING_META)

    with tracer.start_as_current_span("analysis.fetch_metadata") as span:
        span.set_attribute("urls.count", len(valid_urls))
        metadata = await fetch_metadata_for_urls(
            valid_urls,
            concurrency=settings.metadata_concurrency,
            timeout_seconds=settings.probe_timeout_seconds,
            user_agent=settings.probe_user_agent,
            client=client,
            on_progress=_progress_logger(job_id, "fetched metadata"),
        )

    records = [_build_result(item, verdicts_by_url.get(item.url), metadata.get(item.url)) for item in merged]
    try:
        await repository.insert_url_results(job_id, records)
    except RepositoryError:
        logger.exception("failed to save url results job_id=%s count=%s", job_id, len(records))
        await _mark_failed(repository, job_id, STORAGE_ERROR_MESSAGE)
        return AnalysisOutcome(
            job_id=job_id,
            status="failed",
            reason="storage_error",
            urls_found=len(merged),
            valid_urls=len(valid_urls),
            confidences=confidences,
            error_message=STORAGE_ERROR_MESSAGE,
        )

    await repository.update_job(
        job_id,
        status="completed",
        progress=PROGRESS_DONE,
        valid_urls=len(valid_urls),
    )
    logger.info(
        "analysis completed job_id=%s urls=%s valid=%s",
        job_id,
        len(merged),
        len(valid_urls),
    )
    return AnalysisOutcome(
        job_id=job_id,
        status="completed",
        reason="completed",
        urls_found=len(merged),
        valid_urls=len(valid_urls),
        confidences=confidences,
    )


async def _collect_guesses(
    guessers: Mapping[UrlSource, LLMGuesser],
    target_url: str,
) -> dict[UrlSource, GuessResult]:
    sources = list(guessers)
    with tracer.start_as_current_span("analysis.guess"):
        results = await asyncio.gather(
            *(guessers[source].analyze(target_url) for source in sources),
            return_exceptions=True,
        )

    collected: dict[UrlSource, GuessResult] = {}
    for source, result in zip(sources, results):
        if isinstance(result, Exception):
            logger.warning("guesser failed source=%s url=%s error=%s", source, target_url, result)
            collected[source] = EMPTY_GUESS
        elif isinstance(result, BaseException):
            raise result
        elif isinstance(result, GuessResult):
            collected[source] = result
        else:
            collected[source] = coerce_guess_payload(result)
    return collected


def _build_result(
    item: MergedUrl,
    verdict: ProbeVerdict | None,
    metadata: PageMetadata | None,
) -> UrlResultRecord:
    return UrlResultRecord(
        url=item.url,
        source=item.primary_source,
        title=metadata.title if metadata else None,
        description=metadata.description if metadata else None,
        # 0 means no HTTP response; it is stored as "no status".
        status_code=(verdict.status_code or None) if verdict else None,
        is_valid=_is_valid(verdict),
        error_message=verdict.error_message if verdict else None,
    )


def _is_valid(verdict: ProbeVerdict | None) -> bool:
    return verdict is not None and verdict.is_valid


async def _mark_failed(repository: Repository, job_id: str, message: str) -> None:
    try:
        await repository.update_job(job_id, status="failed", error_message=message)
    except RepositoryError:
        logger.exception("could not record failure job_id=%s", job_id)


def _progress_logger(job_id: str, stage: str) -> ProgressCallback:
    def report(completed: int, total: int) -> None:
        if completed == total or completed % 25 == 0:
            logger.info("job_id=%s %s %s/%s", job_id, stage, completed, total)

    return report


def outcome_to_dict(outcome: AnalysisOutcome) -> dict[str, Any]:
    return {
        "job_id": outcome.job_id,
        "status": outcome.status,
        "reason": outcome.reason,
        "urls_found": outcome.urls_found,
        "valid_urls": outcome.valid_urls,
        "invalid_urls": outcome.invalid_urls,
        "confidences": dict(outcome.confidences),
    }
