from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from sitecatalog.jobs import orchestrator
from sitecatalog.jobs.metadata import PageMetadata
from sitecatalog.jobs.prober import ProbeVerdict
from sitecatalog.main import app
from sitecatalog.services.exporter import UTF8_BOM
from sitecatalog.services.guessers import GuessResult, get_guessers
from sitecatalog.services.repository import InMemoryRepository, RepositoryUnavailableError, get_repository


class StaticGuesser:
    def __init__(self, urls: list[str], confidence: float) -> None:
        self.result = GuessResult(urls=tuple(urls), confidence=confidence)

    async def analyze(self, target_url: str) -> GuessResult:
        return self.result


class UnavailableRepository(InMemoryRepository):
    async def create_job(self, target_url: str) -> dict[str, Any]:
        raise RepositoryUnavailableError("database unavailable")


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def client(repository: InMemoryRepository, monkeypatch) -> Iterator[TestClient]:
    async def fake_check_urls(urls: Any, **kwargs: Any) -> list[ProbeVerdict]:
        verdicts = []
        for url in urls:
            if url.endswith("/contact"):
                verdicts.append(ProbeVerdict(url=url, status_code=404, is_valid=False, error_message="HTTP 404"))
            else:
                verdicts.append(ProbeVerdict(url=url, status_code=200, is_valid=True))
        return verdicts

    async def fake_fetch_metadata(urls: Any, **kwargs: Any) -> dict[str, PageMetadata]:
        return {url: PageMetadata(title=f"Page {url.rsplit('/', 1)[-1] or 'home'}", description=None) for url in urls}

    monkeypatch.setattr(orchestrator, "check_urls", fake_check_urls)
    monkeypatch.setattr(orchestrator, "fetch_metadata_for_urls", fake_fetch_metadata)

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_guessers] = lambda: {
        "gemini": StaticGuesser(["https://example.com", "https://example.com/about"], 0.9),
        "gpt": StaticGuesser(["https://example.com/about/", "https://example.com/contact"], 0.7),
    }
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create_job(client: TestClient, url: str = "https://Example.com") -> dict[str, Any]:
    response = client.post("/jobs", json={"url": url})
    assert response.status_code == 201
    return response.json()


def test_create_job_normalizes_seed_url(client: TestClient) -> None:
    job = _create_job(client)
    assert job["target_url"] == "https://example.com/"
    assert job["status"] == "pending"
    assert job["progress"] == 0

    fetched = client.get(f"/jobs/{job['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == job["id"]

    listed = client.get("/jobs")
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == [job["id"]]


@pytest.mark.parametrize("url", ["", "example.com", "ftp://example.com/file", "https://"])
def test_create_job_rejects_invalid_seed(client: TestClient, url: str) -> None:
    response = client.post("/jobs", json={"url": url})
    assert response.status_code == 422


def test_create_job_reports_unavailable_store() -> None:
    app.dependency_overrides[get_repository] = lambda: UnavailableRepository()
    try:
        response = TestClient(app).post("/jobs", json={"url": "https://example.com"})
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503


def test_unknown_job_returns_404(client: TestClient) -> None:
    assert client.get("/jobs/missing").status_code == 404
    assert client.post("/jobs/missing/analyze").status_code == 404
    assert client.get("/jobs/missing/results").status_code == 404


def test_analyze_then_read_results_and_export(client: TestClient) -> None:
    job = _create_job(client)

    analyzed = client.post(f"/jobs/{job['id']}/analyze")
    assert analyzed.status_code == 200
    assert analyzed.json() == {
        "job_id": job["id"],
        "status": "completed",
        "reason": "completed",
        "urls_found": 3,
        "valid_urls": 2,
        "invalid_urls": 1,
        "confidences": {"gemini": 0.9, "gpt": 0.7},
    }

    stored = client.get(f"/jobs/{job['id']}").json()
    assert stored["status"] == "completed"
    assert stored["progress"] == 100

    results = client.get(f"/jobs/{job['id']}/results")
    assert results.status_code == 200
    payload = results.json()
    assert payload["job_status"] == "completed"
    assert [row["url"] for row in payload["results"]] == [
        "https://example.com/",
        "https://example.com/about",
        "https://example.com/contact",
    ]
    assert payload["stats"] == {
        "total": 3,
        "valid": 2,
        "invalid": 1,
        "by_source": {"gemini": 1, "gpt": 1, "sitemap": 0, "merged": 1},
    }

    only_invalid = client.get(f"/jobs/{job['id']}/results", params={"valid": "false"}).json()
    assert [row["url"] for row in only_invalid["results"]] == ["https://example.com/contact"]

    merged = client.get(f"/jobs/{job['id']}/results", params={"source": "merged"}).json()
    assert [row["title"] for row in merged["results"]] == ["Page about"]

    csv_export = client.get(f"/jobs/{job['id']}/export", params={"format": "csv"})
    assert csv_export.status_code == 200
    assert csv_export.headers["content-type"].startswith("text/csv")
    assert "sitemap-results_example_com_" in csv_export.headers["content-disposition"]
    assert csv_export.text.startswith(UTF8_BOM + "URL,Title,Description,Status,Valid,Source,Error")
    assert "https://example.com/contact,,,404,invalid,gpt,HTTP 404" in csv_export.text

    json_export = client.get(f"/jobs/{job['id']}/export", params={"format": "json"})
    assert json_export.status_code == 200
    rows = json.loads(json_export.text)
    assert rows[0]["url"] == "https://example.com/"
    assert rows[0]["isValid"] is True
    assert rows[0]["statusCode"] == 200


def test_analyze_twice_is_rejected(client: TestClient) -> None:
    job = _create_job(client)
    assert client.post(f"/jobs/{job['id']}/analyze").status_code == 200

    second = client.post(f"/jobs/{job['id']}/analyze")
    assert second.status_code == 409
    assert client.get(f"/jobs/{job['id']}").json()["status"] == "completed"


def test_export_requires_completed_job(client: TestClient) -> None:
    job = _create_job(client)
    response = client.get(f"/jobs/{job['id']}/export")
    assert response.status_code == 409


def test_export_with_no_results_returns_404(client: TestClient) -> None:
    app.dependency_overrides[get_guessers] = lambda: {
        "gemini": StaticGuesser([], 0.1),
        "gpt": StaticGuesser([], 0.2),
    }
    job = _create_job(client)

    analyzed = client.post(f"/jobs/{job['id']}/analyze")
    assert analyzed.status_code == 200
    assert analyzed.json()["reason"] == "no_urls_discovered"

    assert client.get(f"/jobs/{job['id']}/export").status_code == 404


def test_export_rejects_unknown_format(client: TestClient) -> None:
    job = _create_job(client)
    assert client.get(f"/jobs/{job['id']}/export", params={"format": "xml"}).status_code == 422


def test_failed_analysis_surfaces_as_server_error(client: TestClient, monkeypatch) -> None:
    def explode(source_urls: Any, base_domain: str) -> Any:
        raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator, "reconcile_urls", explode)
    job = _create_job(client)

    response = client.post(f"/jobs/{job['id']}/analyze")
    assert response.status_code == 500
    assert response.json()["detail"] == orchestrator.UNEXPECTED_ERROR_MESSAGE
    assert client.get(f"/jobs/{job['id']}").json()["status"] == "failed"


def test_analyze_rejects_target_without_domain(client: TestClient, repository: InMemoryRepository) -> None:
    job = asyncio.run(repository.create_job("mailto:someone"))
    response = client.post(f"/jobs/{job['id']}/analyze")
    assert response.status_code == 400
    assert response.json()["detail"] == orchestrator.INVALID_TARGET_MESSAGE
