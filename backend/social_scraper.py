import re
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import requests

from fetcher import is_html_response

logger = logging.getLogger("SOCIAL")

FACEBOOK = "facebook"
INSTAGRAM = "instagram"
LINKEDIN = "linkedin"

_URL_TAIL = r"/[^\s\"'<>\\)]*"

SOCIAL_PATTERNS = {
    FACEBOOK: re.compile(r"(?<![\w-])(?:https?://)?(?:[a-z0-9-]+\.)?(?:facebook\.com|fb\.com)" + _URL_TAIL, re.I),
    INSTAGRAM: re.compile(r"(?<![\w-])(?:https?://)?(?:[a-z0-9-]+\.)?instagram\.com" + _URL_TAIL, re.I),
    LINKEDIN: re.compile(r"(?<![\w-])(?:https?://)?(?:[a-z0-9-]+\.)?linkedin\.com" + _URL_TAIL, re.I),
}

CANONICAL_HOSTS = {
    FACEBOOK: "www.facebook.com",
    INSTAGRAM: "www.instagram.com",
    LINKEDIN: "www.linkedin.com",
}

# First path segments that are never a business profile
INVALID_FIRST_SEGMENTS = {
    FACEBOOK: {"home", "login", "signup", "marketplace", "groups",
               "sharer", "sharer.php", "share.php", "plugins", "dialog", "tr"},
    INSTAGRAM: {"explore", "accounts", "direct", "stories", "tv", "reels", "p"},
}

_FB_PAGES_RE = re.compile(r"^/pages/[^/]+/", re.I)


@dataclass
class SocialMediaUrls:
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    linkedin_url: Optional[str] = None

    def found_count(self) -> int:
        return sum(1 for u in (self.facebook_url, self.instagram_url, self.linkedin_url) if u)


@dataclass
class SocialScrapingResult(SocialMediaUrls):
    found_urls: int = 0
    error: Optional[str] = None


def normalize_social_url(url: str, platform: str) -> Optional[str]:
    """
    Canonical https://www.<platform>.com/<profile> form of a profile link.

    Query strings, fragments and anything below the profile segment
    (/company/<slug> or /in/<slug> on LinkedIn) are dropped. Returns None for links to generic
    platform pages (login, explore, ...) rather than a business profile.
    """
    if not url or platform not in CANONICAL_HOSTS:
        return None

    candidate = url.strip()
    if candidate.startswith("//"):
        candidate = "https:" + candidate
    elif not candidate.lower().startswith(("http://", "https://")):
        candidate = "https://" + candidate

    try:
        parsed = urlparse(candidate)
    except ValueError:
        return None

    path = parsed.path
    if platform == FACEBOOK:
        path = _FB_PAGES_RE.sub("/", path)
    path = path.rstrip("/").rstrip(".")
    if not path:
        return None

    segments = [s for s in path.split("/") if s]
    if not segments:
        return None

    # Only the profile itself is kept; posts, reels and sub-pages collapse to it
    if platform == LINKEDIN:
        if len(segments) < 2 or segments[0].lower() not in ("company", "in"):
            return None
        segments = [segments[0].lower(), segments[1]]
    else:
        if segments[0].lower() in INVALID_FIRST_SEGMENTS[platform]:
            return None
        segments = segments[:1]

    return f"https://{CANONICAL_HOSTS[platform]}/{'/'.join(segments)}"


def _first_match(html: str, platform: str) -> Optional[str]:
    for m in SOCIAL_PATTERNS[platform].finditer(html):
        normalized = normalize_social_url(m.group(0), platform)
        if normalized:
            return normalized
    return None


def extract_social_media(html: str) -> SocialMediaUrls:
    """Keep the first valid profile per platform, in document order."""
    html = html or ""
    return SocialMediaUrls(
        facebook_url=_first_match(html, FACEBOOK),
        instagram_url=_first_match(html, INSTAGRAM),
        linkedin_url=_first_match(html, LINKEDIN),
    )


def scrape_social_media(url: str, session=None, timeout_s: float = 10.0) -> SocialScrapingResult:
    http = session or requests
    try:
        response = http.get(url, timeout=timeout_s, allow_redirects=True)
    except requests.exceptions.Timeout:
        logger.warning(f"Timed out fetching {url}")
        return SocialScrapingResult(error="Request timed out")
    except requests.exceptions.RequestException as e:
        logger.warning(f"Fetch failed for {url}: {e}")
        return SocialScrapingResult(error=str(e))

    if not (200 <= response.status_code < 300):
        return SocialScrapingResult(error=f"HTTP {response.status_code}")

    if not is_html_response(response):
        return SocialScrapingResult(error="Not an HTML page")

    urls = extract_social_media(response.text)
    result = SocialScrapingResult(
        facebook_url=urls.facebook_url,
        instagram_url=urls.instagram_url,
        linkedin_url=urls.linkedin_url,
        found_urls=urls.found_count(),
    )
    logger.info(f"{url}: {result.found_urls} social profile(s)")
    return result


def is_social_only(has_working_website: bool, urls: SocialMediaUrls) -> bool:
    if has_working_website:
        return False
    return bool(urls.facebook_url or urls.instagram_url or urls.linkedin_url)
