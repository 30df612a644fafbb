"""
Request signatures shared by the response cache and the deduplicator.
"""

from typing import Any


def _format_value(value: Any) -> str:
    # Match how httpx renders booleans in the query string
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_params(params: dict[str, Any] | None) -> dict[str, Any]:
    """Drop absent parameters, keeping the rest untouched."""
    if not params:
        return {}
    return {k: v for k, v in params.items() if v is not None}


def build_signature(path: str, params: dict[str, Any] | None = None) -> str:
    """
    Build the canonical key for a logical request.

    Parameters are sorted by key so insertion order never matters:

        build_signature("/discover/movie", {"page": 1, "sort_by": "x"})
        -> "/discover/movie?page=1&sort_by=x"
    """
    clean = normalize_params(params)
    if not clean:
        return path

    query = "&".join(f"{k}={_format_value(clean[k])}" for k in sorted(clean))
    return f"{path}?{query}"
