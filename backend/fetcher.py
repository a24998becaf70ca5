"""Shared HTTP session setup for the validator and the scrapers."""

import requests

from config import DEFAULT_USER_AGENT

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    session.headers["User-Agent"] = user_agent
    return session


def is_html_response(response) -> bool:
    content_type = (response.headers.get("Content-Type") or "").lower()
    return "text/html" in content_type or "application/xhtml" in content_type
