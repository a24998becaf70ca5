"""
Contact email extraction.

Crawls a lead's homepage plus a handful of same-site contact/about pages and
collects plausible business email addresses. robots.txt is honored by default.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse

import requests

from config import DEFAULT_USER_AGENT
from fetcher import is_html_response
from models import EmailSource
from website_validator import normalize_url

logger = logging.getLogger("EMAIL")

MAILTO_CONFIDENCE = 90
TEXT_CONFIDENCE = 70
ROBOTS_TIMEOUT_S = 5.0
ROBOTS_AGENT_TOKEN = "clientfinderbot"

CONTACT_PATHS = ("/contact", "/contact-us", "/about", "/about-us")

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b")
_EMAIL_EXACT_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
_MAILTO_RE = re.compile(r"""href=["']mailto:([^"']+)["']""", re.I)
_HREF_RE = re.compile(r"""href=["']([^"']+)["']""", re.I)

_INVALID_PATTERNS = [
    re.compile(r"\.(png|jpg|jpeg|gif|svg|webp|css|js|woff|woff2|ttf|eot)@", re.I),
    re.compile(r"^(example|test|demo|noreply|no-reply)@", re.I),
    re.compile(r"@(test|localhost)\.", re.I),
    re.compile(r"^.+@domain\.", re.I),
]

_SKIP_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")


@dataclass
class ScraperConfig:
    max_pages: int = 5
    max_depth: int = 2
    timeout_s: float = 10.0
    respect_robots_txt: bool = True
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class EmailInfo:
    email: str
    source: EmailSource = EmailSource.SCRAPED
    confidence: int = TEXT_CONFIDENCE
    found_on_page: Optional[str] = None


@dataclass
class EmailScrapingResult:
    emails: List[EmailInfo] = field(default_factory=list)
    pages_scraped: int = 0
    robots_allowed: bool = True
    error: Optional[str] = None


def is_valid_email(email: Optional[str]) -> bool:
    """Shape check plus the usual template/asset false positives."""
    if not email or len(email) < 5 or len(email) > 254:
        return False
    if not _EMAIL_EXACT_RE.match(email):
        return False
    return not any(p.search(email) for p in _INVALID_PATTERNS)


def _clean_mailto(raw: str) -> str:
    target = raw.split("?", 1)[0].split("&", 1)[0]
    return unquote(target).strip().lower()


def _merge(found: Dict[str, EmailInfo], info: EmailInfo):
    existing = found.get(info.email)
    if existing is None or info.confidence > existing.confidence:
        found[info.email] = info


def extract_emails_from_html(html: str, page_url: Optional[str] = None) -> List[EmailInfo]:
    found: Dict[str, EmailInfo] = {}

    for m in _MAILTO_RE.finditer(html or ""):
        email = _clean_mailto(m.group(1))
        if is_valid_email(email):
            _merge(found, EmailInfo(email=email, confidence=MAILTO_CONFIDENCE, found_on_page=page_url))

    # decode URL-encoded junk like %20info@... before the plain-text scan
    for m in _EMAIL_RE.finditer(unquote(html or "")):
        email = m.group(0).strip().lower()
        if is_valid_email(email):
            _merge(found, EmailInfo(email=email, confidence=TEXT_CONFIDENCE, found_on_page=page_url))

    return list(found.values())


# ==================== ROBOTS.TXT ====================

def parse_robots_txt(text: str) -> List[Tuple[List[str], List[str]]]:
    """Split robots.txt into (user_agents, disallow_rules) groups."""
    groups: List[Tuple[List[str], List[str]]] = []
    agents: List[str] = []
    rules: List[str] = []
    in_rules = False

    for raw_line in (text or "").splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            if in_rules:
                groups.append((agents, rules))
                agents, rules = [], []
                in_rules = False
            agents.append(value.lower())
        elif key in ("disallow", "allow"):
            in_rules = True
            if key == "disallow" and value:
                rules.append(value)

    if agents:
        groups.append((agents, rules))
    return groups


def is_path_allowed(groups: List[Tuple[List[str], List[str]]], path: str, agent_token: str = ROBOTS_AGENT_TOKEN) -> bool:
    path = path or "/"
    for agents, rules in groups:
        applies = any(a == "*" or agent_token in a for a in agents)
        if not applies:
            continue
        for rule in rules:
            if rule == "/" or path.startswith(rule):
                return False
    return True


def fetch_robots_rules(origin: str, http, user_agent: str = DEFAULT_USER_AGENT) -> List[Tuple[List[str], List[str]]]:
    """Fetch and parse robots.txt. Missing or unreachable files allow everything."""
    robots_url = urljoin(origin, "/robots.txt")
    try:
        response = http.get(robots_url, timeout=ROBOTS_TIMEOUT_S, headers={"User-Agent": user_agent})
    except requests.exceptions.RequestException as e:
        logger.debug(f"robots.txt unreachable at {robots_url}: {e}")
        return []
    if not (200 <= response.status_code < 300):
        return []
    return parse_robots_txt(response.text)


# ==================== CRAWL ====================

def extract_contact_links(html: str, base_url: str) -> List[str]:
    """Same-origin links whose path looks like a contact or about page."""
    base_netloc = urlparse(base_url).netloc
    links: List[str] = []

    for m in _HREF_RE.finditer(html or ""):
        href = m.group(1).strip()
        if not href or href.lower().startswith(_SKIP_HREF_PREFIXES):
            continue
        try:
            full_url = urljoin(base_url, href)
            parsed = urlparse(full_url)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https") or parsed.netloc != base_netloc:
            continue
        path = parsed.path.lower()
        if any(cp in path for cp in CONTACT_PATHS):
            full_url = parsed._replace(fragment="").geturl()
            if full_url not in links:
                links.append(full_url)

    return links


def _fetch_page(http, url: str, config: ScraperConfig) -> Optional[str]:
    try:
        response = http.get(
            url,
            timeout=config.timeout_s,
            allow_redirects=True,
            headers={"User-Agent": config.user_agent},
        )
    except requests.exceptions.RequestException as e:
        logger.debug(f"Fetch failed for {url}: {e}")
        return None

    if not (200 <= response.status_code < 300) or not is_html_response(response):
        return None
    return response.text


def scrape_emails(url: Optional[str], config: Optional[ScraperConfig] = None, session=None) -> EmailScrapingResult:
    config = config or ScraperConfig()
    http = session or requests
    result = EmailScrapingResult()

    start_url = normalize_url(url)
    if not start_url:
        result.error = f"Invalid URL: {url}"
        return result

    found: Dict[str, EmailInfo] = {}
    robots_cache: Dict[str, List[Tuple[List[str], List[str]]]] = {}

    def allowed(page_url: str) -> bool:
        if not config.respect_robots_txt:
            return True
        parsed = urlparse(page_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        if origin not in robots_cache:
            robots_cache[origin] = fetch_robots_rules(origin, http, config.user_agent)
        return is_path_allowed(robots_cache[origin], parsed.path)

    if not allowed(start_url):
        logger.info(f"robots.txt disallows {start_url}")
        result.robots_allowed = False
        return result

    link_depth = max(config.max_depth, 1)
    frontier: List[Tuple[str, int]] = [(start_url, 0)]
    visited = {start_url}

    try:
        while frontier and result.pages_scraped < config.max_pages:
            page_url, depth = frontier.pop(0)
            if depth > 0 and not allowed(page_url):
                continue

            html = _fetch_page(http, page_url, config)
            if html is None:
                continue
            result.pages_scraped += 1

            for info in extract_emails_from_html(html, page_url):
                _merge(found, info)

            if depth == 0 and config.max_depth == 0 and found:
                break

            if depth < link_depth:
                for link in extract_contact_links(html, page_url):
                    if link not in visited:
                        visited.add(link)
                        frontier.append((link, depth + 1))
    except Exception as e:
        logger.warning(f"Email scrape of {start_url} aborted: {e}")
        result.error = str(e)

    result.emails = list(found.values())
    logger.info(f"{start_url}: {len(result.emails)} email(s) from {result.pages_scraped} page(s)")
    return result
