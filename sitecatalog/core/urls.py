from urllib.parse import SplitResult, urlsplit, urlunsplit

WEB_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}


def _split_absolute(raw_url: str) -> SplitResult | None:
    try:
        parsed = urlsplit(raw_url.strip())
        # Accessing .port validates it; urlsplit itself is lenient.
        parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not parsed.hostname:
        return None
    return parsed


def normalize_url(raw_url: str) -> str:
    """Canonical form used to dedupe candidate URLs.

    Unparsable input is returned unchanged, so callers can always feed the
    result to ``same_domain`` (which rejects it). Idempotent.
    """
    parsed = _split_absolute(raw_url)
    if parsed is None:
        return raw_url

    scheme = parsed.scheme.lower()
    host = parsed.hostname or ""
    if ":" in host:
        host = f"[{host}]"

    netloc = host
    port = parsed.port
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    userinfo, separator, _ = parsed.netloc.rpartition("@")
    if separator:
        netloc = f"{userinfo}@{netloc}"

    path = parsed.path
    if not path and scheme in WEB_SCHEMES:
        path = "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    return urlunsplit((scheme, netloc, path, parsed.query, parsed.fragment))


def extract_domain(raw_url: str) -> str | None:
    parsed = _split_absolute(raw_url)
    if parsed is None:
        return None
    return parsed.hostname


def same_domain(url_a: str, url_b: str) -> bool:
    domain_a = extract_domain(url_a)
    return domain_a is not None and domain_a == extract_domain(url_b)


def validate_seed_url(raw_url: str | None) -> str:
    candidate = (raw_url or "").strip()
    if not candidate:
        raise ValueError("url is required")

    parsed = _split_absolute(candidate)
    if parsed is None:
        raise ValueError("url must be a valid absolute URL")
    if parsed.scheme.lower() not in WEB_SCHEMES:
        raise ValueError("url must start with http:// or https://")
    return normalize_url(candidate)
