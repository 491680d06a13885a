from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from sitecatalog.jobs.metadata import EMPTY_METADATA, PageMetadata, parse_page_metadata

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_VALIDITY_CONCURRENCY = 5
DEFAULT_METADATA_CONCURRENCY = 3
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; SiteURLChecker/1.0)"

T = TypeVar("T")
ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True, slots=True)
class ProbeVerdict:
    url: str
    status_code: int
    is_valid: bool
    error_message: str | None = None


async def run_bounded(
    items: Iterable[str],
    work: Callable[[str], Awaitable[T]],
    *,
    fallback: Callable[[str, Exception], T],
    concurrency: int,
    timeout_seconds: float | None = None,
    on_progress: ProgressCallback | None = None,
) -> dict[str, T]:
    """Run ``work`` once per distinct item with at most ``concurrency`` in flight.

    A fixed pool of workers drains one shared queue. Each unit is cancelled
    after ``timeout_seconds``; a unit that times out or raises is replaced by
    ``fallback(item, exc)`` so the batch always yields one result per item.
    ``on_progress`` is called synchronously with ``(completed, total)`` and
    must return quickly.
    """
    pending = list(dict.fromkeys(items))
    total = len(pending)
    results: dict[str, T] = {}
    if total == 0:
        return results

    queue: asyncio.Queue[str] = asyncio.Queue()
    for item in pending:
        queue.put_nowait(item)

    completed = 0

    async def worker() -> None:
        nonlocal completed
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                if timeout_seconds is None:
                    result = await work(item)
                else:
                    result = await asyncio.wait_for(work(item), timeout=timeout_seconds)
            except Exception as exc:
                logger.debug("probe unit failed url=%s error=%r", item, exc)
                result = fallback(item, exc)

            results[item] = result
            completed += 1
            if on_progress is not None:
                _notify_progress(on_progress, completed, total)

    worker_count = min(max(1, concurrency), total)
    await asyncio.gather(*(worker() for _ in range(worker_count)))
    return results


async def check_url(client: httpx.AsyncClient, url: str) -> ProbeVerdict:
    response = await client.head(url)
    status_code = int(response.status_code)
    if response.is_success:
        return ProbeVerdict(url=url, status_code=status_code, is_valid=True)
    return ProbeVerdict(
        url=url,
        status_code=status_code,
        is_valid=False,
        error_message=f"HTTP {status_code}",
    )


async def check_urls(
    urls: Iterable[str],
    *,
    concurrency: int = DEFAULT_VALIDITY_CONCURRENCY,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = DEFAULT_USER_AGENT,
    client: httpx.AsyncClient | None = None,
    on_progress: ProgressCallback | None = None,
) -> list[ProbeVerdict]:
    async def run(active_client: httpx.AsyncClient) -> list[ProbeVerdict]:
        verdicts = await run_bounded(
            urls,
            lambda url: check_url(active_client, url),
            fallback=_failed_verdict,
            concurrency=concurrency,
            timeout_seconds=timeout_seconds,
            on_progress=on_progress,
        )
        return list(verdicts.values())

    if client is not None:
        return await run(client)
    async with _build_probe_client(timeout_seconds, user_agent) as temp_client:
        return await run(temp_client)


async def fetch_metadata(client: httpx.AsyncClient, url: str) -> PageMetadata:
    response = await client.get(url)
    if not response.is_success:
        return EMPTY_METADATA
    return parse_page_metadata(response.text)


async def fetch_metadata_for_urls(
    urls: Iterable[str],
    *,
    concurrency: int = DEFAULT_METADATA_CONCURRENCY,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = DEFAULT_USER_AGENT,
    client: httpx.AsyncClient | None = None,
    on_progress: ProgressCallback | None = None,
) -> dict[str, PageMetadata]:
    async def run(active_client: httpx.AsyncClient) -> dict[str, PageMetadata]:
        return await run_bounded(
            urls,
            lambda url: fetch_metadata(active_client, url),
            fallback=lambda _url, _exc: EMPTY_METADATA,
            concurrency=concurrency,
            timeout_seconds=timeout_seconds,
            on_progress=on_progress,
        )

    if client is not None:
        return await run(client)
    async with _build_probe_client(timeout_seconds, user_agent) as temp_client:
        return await run(temp_client)


def _build_probe_client(timeout_seconds: float, user_agent: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": user_agent},
    )


def _failed_verdict(url: str, exc: Exception) -> ProbeVerdict:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        message = "Request timeout"
    else:
        message = str(exc) or type(exc).__name__
    return ProbeVerdict(url=url, status_code=0, is_valid=False, error_message=message)


def _notify_progress(callback: ProgressCallback, completed: int, total: int) -> None:
    try:
        callback(completed, total)
    except Exception:
        logger.exception("progress callback failed at %s/%s", completed, total)
