import threading
import time

import pytest
from fastapi.testclient import TestClient

from config import Settings
from conftest import FakeResponse, FakeSession, html_page
from database import Database
from job_queue import JobQueue
from main import create_app
from models import JobType


@pytest.fixture
def session():
    return FakeSession({
        "https://acme.com/": FakeResponse(text=html_page('hello@acme.com <a href="https://instagram.com/acme">ig</a>')),
    })


@pytest.fixture
def client(tmp_path, session):
    settings = Settings(database_path=str(tmp_path / "api.db"), rate_limit_enabled=False)
    app = create_app(settings, http_session=session)
    with TestClient(app) as test_client:
        yield test_client


def _create(client, **fields):
    body = {"name": "Acme", "address": "1 Main St"}
    body.update(fields)
    response = client.post("/api/leads", json=body)
    assert response.status_code == 201
    return response.json()


class TestHealth:

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "healthy"}


class TestJobsApi:

    def test_create_then_process(self, client):
        created = _create(client, website="acme.com")
        lead_id = created["lead"]["id"]
        assert len(created["job_ids"]) == 3

        response = client.post("/api/jobs/process", json={"max_jobs": 10})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["processed"] == 3
        assert body["failed"] == 0
        assert body["pending_count"] == 0

        lead = client.get(f"/api/leads/{lead_id}").json()
        assert lead["website_status"] == "acceptable"
        emails = [c["email"] for c in lead["contacts"] if c["email"]]
        assert emails == ["hello@acme.com"]
        assert any(c["instagram_url"] == "https://www.instagram.com/acme" for c in lead["contacts"])
        assert {j["status"] for j in lead["jobs"]} == {"success"}

    def test_process_without_body(self, client):
        response = client.post("/api/jobs/process")
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_process_validates_limits(self, client):
        assert client.post("/api/jobs/process", json={"max_jobs": 0}).status_code == 422

    def test_status_and_job_lookup(self, client):
        created = _create(client)
        job_id = created["job_ids"][0]

        job = client.get(f"/api/jobs/{job_id}").json()
        assert job["status"] == "queued"
        assert job["lead_name"] == "Acme"

        status = client.get("/api/jobs/status").json()
        assert status["queued"] == 3
        assert status["total"] == 3
        assert status["pending_count"] == 3
        assert status["recent_failures"] == []

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/nope").status_code == 404

    def test_retry_requires_failure(self, client):
        job_id = _create(client)["job_ids"][0]
        response = client.post("/api/jobs/retry", json={"job_id": job_id})
        assert response.status_code == 404

    def test_enqueue_is_idempotent(self, client):
        created = _create(client)
        lead_id = created["lead"]["id"]
        response = client.post("/api/jobs/enqueue", json={"target_id": lead_id, "job_types": ["email_scraping"]})
        assert response.json()["job_ids"] == [created["job_ids"][1]]

    def test_enqueue_unknown_lead(self, client):
        response = client.post("/api/jobs/enqueue", json={"target_id": "nope"})
        assert response.status_code == 404


class TestLeadsApi:

    def test_queue_listing(self, client):
        _create(client, name="First")
        _create(client, name="Second", website="acme.com")
        body = client.get("/api/leads", params={"per_page": 1}).json()
        assert body["total"] == 2
        assert body["total_pages"] == 2
        assert len(body["items"]) == 1

    def test_duplicate_check(self, client):
        lead_id = _create(client)["lead"]["id"]
        body = client.post("/api/leads/check-duplicate", json={"name": "ACME", "address": "1 main st"}).json()
        assert body["duplicate"]["id"] == lead_id
        body = client.post("/api/leads/check-duplicate", json={"name": "Other", "address": "1 main st"}).json()
        assert body["duplicate"] is None

    def test_create_requires_name(self, client):
        assert client.post("/api/leads", json={"name": "", "address": "x"}).status_code == 422

    def test_lifecycle_flow(self, client):
        lead_id = _create(client)["lead"]["id"]

        response = client.post("/api/leads/status", json={"lead_id": lead_id, "status": "contacted"})
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["current_status"] == "pending"
        assert detail["attempted_status"] == "contacted"
        assert "approved, rejected" in detail["reason"]

        response = client.post("/api/leads/convert-to-client", json={"lead_id": lead_id})
        assert response.status_code == 400
        assert "approved" in response.json()["detail"]["reason"]

        assert client.post("/api/leads/approve", json={"lead_ids": [lead_id], "user_id": "op"}).json()["count"] == 1

        response = client.post("/api/leads/convert-to-client", json={"lead_id": lead_id, "client_status": "active"})
        assert response.status_code == 200
        assert response.json()["lead"]["is_client"] is True

        assert client.post("/api/leads/status", json={"lead_id": lead_id, "status": "contacted"}).status_code == 200
        response = client.post("/api/leads/inactive", json={"lead_id": lead_id, "status": "inactive", "reason": "no reply"})
        assert response.status_code == 200
        assert response.json()["lead"]["lead_status"] == "inactive"

    def test_bulk_reject_reports_offenders(self, client):
        lead_id = _create(client)["lead"]["id"]
        client.post("/api/leads/reject", json={"lead_ids": [lead_id]})
        response = client.post("/api/leads/approve", json={"lead_ids": [lead_id]})
        assert response.status_code == 400
        details = response.json()["detail"]["details"]
        assert details[0]["id"] == lead_id
        assert details[0]["current_status"] == "rejected"

    def test_update_and_missing(self, client):
        lead_id = _create(client)["lead"]["id"]
        response = client.patch(f"/api/leads/{lead_id}", json={"next_followup_at": "2026-11-01T09:00:00"})
        assert response.json()["next_followup_at"] == "2026-11-01T09:00:00"
        assert client.patch("/api/leads/nope", json={"notes": "x"}).status_code == 404
        assert client.get("/api/leads/nope").status_code == 404
        assert client.post("/api/leads/inactive", json={"lead_id": "nope", "status": "inactive"}).status_code == 404


class TestClientsApi:

    def _client(self, client, **convert_fields):
        lead_id = _create(client)["lead"]["id"]
        client.post("/api/leads/approve", json={"lead_ids": [lead_id]})
        response = client.post("/api/leads/convert-to-client", json={"lead_id": lead_id, **convert_fields})
        assert response.status_code == 200
        return lead_id

    def test_list_and_needs_attention(self, client):
        troubled = self._client(client, subscription_status="payment_failed")
        _create(client, name="Not a client", address="2 Main St")

        body = client.get("/api/clients").json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == troubled
        assert body["items"][0]["needs_attention"] is True

        body = client.get("/api/clients", params={"needs_attention": "true"}).json()
        assert [item["id"] for item in body["items"]] == [troubled]
        assert client.get("/api/clients", params={"sort_by": "bogus"}).status_code == 422

    def test_patch_and_checklist(self, client):
        client_id = self._client(client)

        response = client.patch(f"/api/clients/{client_id}", json={"client_status": "needs_review"})
        assert response.status_code == 200
        assert response.json()["client"]["client_status"] == "needs_review"

        response = client.post(f"/api/clients/{client_id}/checklist", json={"action": "client_contacted", "user_id": "op"})
        assert response.status_code == 200
        assert response.json()["entry"]["notes"] == "Checklist: client_contacted"
        assert client.post(f"/api/clients/{client_id}/checklist", json={"action": "nope"}).status_code == 422

        entries = client.get(f"/api/clients/{client_id}/checklist").json()["entries"]
        assert [e["action"] for e in entries] == ["client_contacted"]

        detail = client.get(f"/api/clients/{client_id}").json()
        assert detail["needs_attention"] is True
        assert len(detail["checklist"]) == 1

    def test_unknown_client(self, client):
        lead_id = _create(client)["lead"]["id"]
        assert client.get(f"/api/clients/{lead_id}").status_code == 404
        assert client.patch("/api/clients/nope", json={"notes": "x"}).status_code == 404
        assert client.get("/api/clients/nope/checklist").status_code == 404
        assert client.post("/api/clients/nope/checklist", json={"action": "client_contacted"}).status_code == 404


class TestShutdown:

    def test_shutdown_lets_in_flight_job_finish(self, tmp_path):
        fetching = threading.Event()

        class SlowSession(FakeSession):
            def get(self, url, **kwargs):
                fetching.set()
                time.sleep(0.5)
                return FakeResponse(text=html_page(), url=url)

        path = str(tmp_path / "shutdown.db")
        settings = Settings(
            database_path=path,
            rate_limit_enabled=False,
            scheduler_interval_s=0.05,
            batch_timeout_s=0.2,
        )
        with TestClient(create_app(settings, http_session=SlowSession())) as client:
            job_ids = _create(client, website="slow.com")["job_ids"]
            assert fetching.wait(2.0)

        with Database(path) as db:
            statuses = [db.get_job(job_id)["status"] for job_id in job_ids]
            assert "running" not in statuses
            assert statuses[0] == "success"

            # a later enqueue is not stuck on a dead running job
            lead_id = db.get_job(job_ids[0])["target_id"]
            assert JobQueue(db).enqueue(lead_id, JobType.WEBSITE_VALIDATION) != job_ids[0]
