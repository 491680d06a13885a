from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from sitecatalog.core.urls import extract_domain
from sitecatalog.schemas.results import UrlResultExport

CSV_HEADERS = ("URL", "Title", "Description", "Status", "Valid", "Source", "Error")
UTF8_BOM = "\ufeff"

MEDIA_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "json": "application/json",
}


def export_results(results: Iterable[Mapping[str, Any]], fmt: str) -> str:
    if fmt == "csv":
        return export_csv(results)
    if fmt == "json":
        return export_json(results)
    raise ValueError("format must be one of: csv, json")


def export_csv(results: Iterable[Mapping[str, Any]]) -> str:
    """CSV with a UTF-8 BOM so spreadsheet tools pick the right encoding."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADERS)
    for row in results:
        status_code = row.get("status_code")
        writer.writerow(
            (
                row.get("url") or "",
                row.get("title") or "",
                row.get("description") or "",
                "" if status_code is None else str(status_code),
                "valid" if row.get("is_valid") else "invalid",
                row.get("source") or "",
                row.get("error_message") or "",
            )
        )
    # Drop the trailing newline after the last record.
    return UTF8_BOM + buffer.getvalue().removesuffix("\n")


def export_json(results: Iterable[Mapping[str, Any]]) -> str:
    rows = [
        UrlResultExport(
            url=row["url"],
            title=row.get("title"),
            description=row.get("description"),
            status_code=row.get("status_code"),
            is_valid=row.get("is_valid"),
            source=row.get("source") or "",
            error_message=row.get("error_message"),
        ).model_dump(by_alias=True)
        for row in results
    ]
    return json.dumps(rows, indent=2, ensure_ascii=False)


def export_filename(target_url: str, fmt: str, *, today: date | None = None) -> str:
    domain = (extract_domain(target_url) or "site").replace(".", "_")
    stamp = (today or date.today()).isoformat()
    return f"sitemap-results_{domain}_{stamp}.{fmt}"
