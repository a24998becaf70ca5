"""
Website health check.

Fetches a lead's website once and classifies it into one of the
WebsiteStatus buckets used to prioritize outreach.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

import requests

from models import WebsiteStatus

logger = logging.getLogger("VALIDATOR")

REQUEST_TIMEOUT_S = 10.0
SLOW_LOAD_THRESHOLD_MS = 5000

ISSUE_TIMEOUT = "Request timed out"
ISSUE_NO_SSL = "No HTTPS/SSL"
ISSUE_NO_VIEWPORT = "No mobile viewport meta tag"


@dataclass
class WebsiteValidationResult:
    status: WebsiteStatus
    response_code: Optional[int] = None
    load_time_ms: Optional[int] = None
    has_ssl: Optional[bool] = None
    has_mobile_viewport: Optional[bool] = None
    issues: List[str] = field(default_factory=list)


def normalize_url(url: Optional[str]) -> Optional[str]:
    """Trim, lowercase and default to https. Returns None when unusable."""
    if not url:
        return None
    cleaned = url.strip().lower()
    if not cleaned:
        return None
    if "://" not in cleaned:
        cleaned = f"https://{cleaned}"

    try:
        parsed = urlparse(cleaned)
    except ValueError:
        return None

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    if " " in parsed.netloc:
        return None

    return urlunparse(parsed._replace(path=parsed.path or "/"))


def has_viewport_meta(html: str) -> bool:
    lowered = html.lower()
    return "viewport" in lowered and (
        "width=device-width" in lowered or "initial-scale" in lowered
    )


def classify(issues: List[str]) -> WebsiteStatus:
    if not issues:
        return WebsiteStatus.ACCEPTABLE
    if any(i.startswith(("HTTP ", "Network error")) or i == ISSUE_TIMEOUT for i in issues):
        return WebsiteStatus.BROKEN
    if any(i == ISSUE_NO_SSL or i.startswith("Slow load time") for i in issues):
        return WebsiteStatus.OUTDATED
    return WebsiteStatus.TECHNICAL_ISSUES


def validate_website(url: Optional[str], session=None, timeout_s: float = REQUEST_TIMEOUT_S) -> WebsiteValidationResult:
    normalized = normalize_url(url)
    if not normalized:
        logger.info(f"No usable website URL ({url!r})")
        return WebsiteValidationResult(status=WebsiteStatus.NO_WEBSITE)

    http = session or requests
    issues: List[str] = []

    start = time.monotonic()
    try:
        response = http.get(normalized, timeout=timeout_s, allow_redirects=True, stream=True)
    except requests.exceptions.Timeout:
        logger.warning(f"Timed out fetching {normalized}")
        return WebsiteValidationResult(status=WebsiteStatus.BROKEN, issues=[ISSUE_TIMEOUT])
    except requests.exceptions.RequestException as e:
        logger.warning(f"Network error fetching {normalized}: {e}")
        return WebsiteValidationResult(status=WebsiteStatus.BROKEN, issues=[f"Network error: {e}"])

    load_time_ms = int((time.monotonic() - start) * 1000)
    final_url = getattr(response, "url", None) or normalized
    has_ssl = final_url.lower().startswith("https://")
    code = response.status_code

    result = WebsiteValidationResult(
        status=WebsiteStatus.UNKNOWN,
        response_code=code,
        load_time_ms=load_time_ms,
        has_ssl=has_ssl,
    )

    try:
        if code >= 400:
            issues.append(f"HTTP {code} error")
        else:
            if not has_ssl:
                issues.append(ISSUE_NO_SSL)
            if load_time_ms > SLOW_LOAD_THRESHOLD_MS:
                issues.append(f"Slow load time: {load_time_ms}ms")

            try:
                body = response.text
            except requests.exceptions.RequestException as e:
                logger.warning(f"Could not read body of {normalized}: {e}")
                body = ""
            result.has_mobile_viewport = has_viewport_meta(body)
            if not result.has_mobile_viewport:
                issues.append(ISSUE_NO_VIEWPORT)
    finally:
        response.close()

    result.issues = issues
    result.status = classify(issues)
    logger.info(f"{normalized} -> {result.status.value} (HTTP {code}, {load_time_ms}ms, issues={len(issues)})")
    return result
