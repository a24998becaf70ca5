"""
Shared fixtures for the lead enrichment test suite.

- A fresh sqlite Database per test (tmp_path)
- FakeSession: a requests-compatible stand-in that serves canned responses
"""

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from database import Database
from job_queue import JobQueue
from models import Lead


class FakeResponse:
    def __init__(self, status_code=200, text="", content_type="text/html; charset=utf-8", url=None):
        self.status_code = status_code
        self.text = text
        self.url = url
        self.headers = CaseInsensitiveDict({"Content-Type": content_type})
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    """
    Maps URL -> FakeResponse or exception instance. Unknown URLs get a 404.
    Every call is recorded in .calls as (url, kwargs).
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        outcome = self.routes.get(url)
        if outcome is None:
            return FakeResponse(status_code=404, text="not found", url=url)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome.url is None:
            outcome.url = url
        return outcome

    def called_urls(self):
        return [url for url, _ in self.calls]

    def close(self):
        pass


def html_page(body="", head='<meta name="viewport" content="width=device-width, initial-scale=1">'):
    return f"<html><head>{head}</head><body>{body}</body></html>"


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "leads.db")).open()
    yield database
    database.close()


@pytest.fixture
def queue(db):
    return JobQueue(db)


@pytest.fixture
def make_lead(db):
    def _make(name="Acme Plumbing", address="1 Main St, Springfield", website=None, **fields):
        return db.add_lead(Lead(name=name, address=address, website=website, **fields))
    return _make


@pytest.fixture
def timeout_error():
    return requests.exceptions.Timeout("read timed out")
