"""
Shared validation functions for Pydantic schemas.

Length limits come from settings, so they are read at validation time rather
than at import time.
"""
import re
from urllib.parse import urlparse

from core.config import get_settings

URL_SCHEMES = {"http", "https"}


def normalize_whitespace(value: str) -> str:
    """Collapse newlines, tabs, and runs of whitespace into single spaces."""
    return re.sub(r"\s+", " ", value).strip()


def validate_url(url: str) -> str:
    """
    Validate and trim a bookmark URL.

    Raises:
        ValueError: If the URL is empty, too long, or not an http(s) URL.
    """
    settings = get_settings()
    trimmed = url.strip()
    if not trimmed:
        raise ValueError("URL cannot be empty")
    if len(trimmed) > settings.max_url_length:
        raise ValueError(
            f"URL exceeds maximum length of {settings.max_url_length:,} characters "
            f"(got {len(trimmed):,} characters).",
        )
    parsed = urlparse(trimmed)
    if parsed.scheme.lower() not in URL_SCHEMES or not parsed.netloc:
        raise ValueError(f"Invalid URL: '{trimmed}'. Only http and https URLs are supported.")
    return trimmed


def validate_title(title: str) -> str:
    """
    Validate and normalize a bookmark title.

    Raises:
        ValueError: If the title is empty after normalization or too long.
    """
    settings = get_settings()
    normalized = normalize_whitespace(title)
    if not normalized:
        raise ValueError("Title cannot be empty")
    if len(normalized) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(normalized):,} characters).",
        )
    return normalized
