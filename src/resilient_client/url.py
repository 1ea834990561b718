"""URL helpers for dependency clients."""

from collections.abc import Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit


def normalize_base_url(base_url: str) -> str:
    """Strip whitespace and trailing slashes from a base URL."""
    normalized = base_url.strip().rstrip("/")
    parsed = urlsplit(normalized)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"base_url must be an absolute URL, got {base_url!r}")
    return normalized


def build_url(
    base_url: str,
    path: str,
    params: Mapping[str, str] | None = None,
) -> str:
    """Join ``path`` onto ``base_url`` and append query ``params``."""
    parsed = urlsplit(path)
    if parsed.scheme and parsed.netloc:
        url = path
    else:
        url = f"{base_url.rstrip('/')}/{path.lstrip('/')}" if path else base_url
    if not params:
        return url

    split = urlsplit(url)
    query = urlencode(list(params.items()))
    if split.query:
        query = f"{split.query}&{query}"
    return urlunsplit(
        (split.scheme, split.netloc, split.path, query, split.fragment)
    )


def derive_cloud_run_url(
    service_name: str,
    *,
    project_id: str | None = None,
    region: str = "us-central1",
) -> str:
    """Derive a Cloud Run base URL for ``service_name``.

    Uses the project-scoped form when ``project_id`` is known and the regional
    form otherwise.
    """
    name = service_name.strip()
    if not name:
        raise ValueError("service_name must be non-empty")
    if project_id:
        return f"https://{name}-{project_id}.run.app"
    return f"https://{name}.{region}.run.app"
