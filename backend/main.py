from contextlib import asynccontextmanager
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional

# Rate limiting to protect the processing trigger
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from clients import (
    ClientNotFoundError,
    get_checklist,
    get_client_detail,
    list_clients,
    record_checklist_action,
    update_client,
)
from config import Settings, configure_logging, load_settings
from database import Database
from email_scraper import ScraperConfig
from fetcher import build_session
from job_queue import JobQueue
from leads import (
    BulkTransitionError,
    LeadNotFoundError,
    approve_leads,
    change_status,
    check_duplicate,
    convert_to_client,
    create_lead,
    get_lead_detail,
    mark_inactive,
    reject_leads,
    review_queue,
    update_lead_details,
)
from lifecycle import InvalidConversionError, InvalidStateTransitionError
from models import (
    BulkLeadAction,
    ChecklistEntryCreate,
    ClientUpdate,
    ConvertToClientRequest,
    DuplicateCheckRequest,
    EnqueueRequest,
    EnqueueResponse,
    JobResponse,
    LeadCreate,
    LeadStatus,
    LeadStatusChange,
    LeadUpdate,
    PaginatedClients,
    PaginatedLeads,
    ProcessJobsRequest,
    ProcessJobsResponse,
    QueueStatusResponse,
    RetryJobRequest,
    WebsiteStatus,
)
from processor import JobProcessor
from tasks import JobRunner, JobScheduler
import logging

logger = logging.getLogger("SERVER")

_process_rate_limit = "30/minute"


def process_rate_limit() -> str:
    return _process_rate_limit


limiter = Limiter(key_func=get_remote_address)
router = APIRouter(prefix="/api")


def _transition_error(e: InvalidStateTransitionError) -> HTTPException:
    return HTTPException(status_code=400, detail={
        "error": "Invalid state transition",
        "current_status": e.from_status.value,
        "attempted_status": e.to_status.value,
        "reason": str(e),
    })


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info("=" * 60)
    logger.info("LEAD ENRICHMENT SERVICE - Starting up...")
    logger.info("=" * 60)

    db = Database(settings.database_path).open()
    session = app.state.http_session or build_session(settings.user_agent)
    queue = JobQueue(db)
    processor = JobProcessor(
        db,
        session=session,
        timeout_s=settings.fetch_timeout_s,
        scraper_config=ScraperConfig(timeout_s=settings.fetch_timeout_s, user_agent=settings.user_agent),
    )
    runner = JobRunner(queue, processor)

    app.state.db = db
    app.state.queue = queue
    app.state.runner = runner
    app.state.scheduler = None

    if settings.scheduler_interval_s > 0:
        app.state.scheduler = JobScheduler(
            runner,
            interval_s=settings.scheduler_interval_s,
            max_jobs=settings.batch_max_jobs,
            timeout_s=settings.batch_timeout_s,
        )
        app.state.scheduler.start()

    logger.info(f"Server ready! {queue.pending_count()} enrichment job(s) pending")
    logger.info("=" * 60)
    yield
    logger.info("Server shutting down...")
    if app.state.scheduler:
        # Waits for a claimed job to be marked before the database goes away
        app.state.scheduler.stop()
    if not app.state.http_session:
        session.close()
    db.close()


def create_app(settings: Optional[Settings] = None, http_session=None) -> FastAPI:
    global _process_rate_limit

    settings = settings or load_settings()
    configure_logging(settings.log_level)
    _process_rate_limit = settings.process_rate_limit
    limiter.enabled = settings.rate_limit_enabled

    app = FastAPI(
        title="Lead Enrichment Service",
        description="Background website validation and contact scraping for discovered leads",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.http_session = http_session

    # Add rate limiter to app state and exception handler
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


@router.get("/health")
async def health_check():
    return {"status": "healthy"}


# ==================== JOBS ====================

@router.post("/jobs/process", response_model=ProcessJobsResponse)
@limiter.limit(process_rate_limit)
def process_jobs(request: Request, body: Optional[ProcessJobsRequest] = None):
    """Run one time-boxed batch of queued enrichment jobs."""
    settings: Settings = request.app.state.settings
    body = body or ProcessJobsRequest()
    summary = request.app.state.runner.run_batch(
        max_jobs=body.max_jobs or settings.batch_max_jobs,
        timeout_s=body.timeout_s or settings.batch_timeout_s,
    )
    return ProcessJobsResponse(
        processed=len(summary.processed),
        failed=len(summary.failed),
        pending_count=summary.pending_count,
        processing_time_ms=summary.processing_time_ms,
    )


@router.get("/jobs/status", response_model=QueueStatusResponse)
async def jobs_status(request: Request):
    return request.app.state.queue.status_summary()


@router.post("/jobs/retry")
async def retry_job(request: Request, body: RetryJobRequest):
    if not request.app.state.queue.retry(body.job_id):
        raise HTTPException(status_code=404, detail="Job not found or not in failure state")
    return {"success": True, "job_id": body.job_id}


@router.post("/jobs/enqueue", response_model=EnqueueResponse)
async def enqueue_jobs(request: Request, body: EnqueueRequest):
    if not request.app.state.db.get_lead(body.target_id):
        raise HTTPException(status_code=404, detail="Lead not found")
    job_ids = request.app.state.queue.enqueue_batch((body.target_id, t) for t in body.job_types)
    return EnqueueResponse(job_ids=job_ids)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job_status(request: Request, job_id: str):
    job = request.app.state.queue.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# ==================== LEADS ====================

@router.post("/leads", status_code=201)
async def create_manual_lead(request: Request, body: LeadCreate):
    lead, job_ids = create_lead(request.app.state.db, request.app.state.queue, body)
    return {"success": True, "lead": lead, "job_ids": job_ids}


@router.post("/leads/check-duplicate")
async def check_duplicate_lead(request: Request, body: DuplicateCheckRequest):
    return {"duplicate": check_duplicate(request.app.state.db, body.name, body.address)}


@router.get("/leads", response_model=PaginatedLeads)
async def list_leads(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    lead_status: Optional[LeadStatus] = LeadStatus.PENDING,
    website_status: Optional[WebsiteStatus] = None,
    sort_by: str = Query("priority", pattern="^(priority|name|discovered_at)$"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
):
    return review_queue(
        request.app.state.db,
        page=page,
        per_page=per_page,
        lead_status=lead_status,
        website_status=website_status,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/leads/{lead_id}")
async def get_lead(request: Request, lead_id: str):
    try:
        return get_lead_detail(request.app.state.db, lead_id)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")


@router.patch("/leads/{lead_id}")
async def update_lead(request: Request, lead_id: str, body: LeadUpdate):
    try:
        return update_lead_details(request.app.state.db, lead_id, body)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")


@router.post("/leads/approve")
async def approve(request: Request, body: BulkLeadAction):
    try:
        count = approve_leads(request.app.state.db, body.lead_ids, body.user_id)
    except BulkTransitionError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid state transitions", "details": e.details})
    return {"success": True, "count": count}


@router.post("/leads/reject")
async def reject(request: Request, body: BulkLeadAction):
    try:
        count = reject_leads(request.app.state.db, body.lead_ids, body.user_id, body.reason)
    except BulkTransitionError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid state transitions", "details": e.details})
    return {"success": True, "count": count}


@router.post("/leads/inactive")
async def inactive(request: Request, body: LeadStatusChange):
    try:
        lead = mark_inactive(request.app.state.db, body.lead_id, body.reason)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except InvalidStateTransitionError as e:
        raise _transition_error(e)
    return {"success": True, "lead": lead}


@router.post("/leads/status")
async def set_status(request: Request, body: LeadStatusChange):
    try:
        lead = change_status(request.app.state.db, body.lead_id, body.status, body.reason)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except InvalidStateTransitionError as e:
        raise _transition_error(e)
    return {"success": True, "lead": lead}


@router.post("/leads/convert-to-client")
async def convert(request: Request, body: ConvertToClientRequest):
    try:
        lead = convert_to_client(request.app.state.db, body)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except InvalidConversionError as e:
        raise HTTPException(status_code=400, detail={
            "error": "Invalid conversion",
            "current_status": e.current_status.value if e.current_status else None,
            "reason": str(e),
        })
    return {"success": True, "lead": lead}


# ==================== CLIENTS ====================

@router.get("/clients", response_model=PaginatedClients)
async def get_clients(
    request: Request,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    subscription_status: Optional[str] = None,
    client_status: Optional[str] = None,
    needs_attention: bool = False,
    sort_by: str = Query("updated_at", pattern="^(name|converted_at|next_payment_due_date|updated_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    return list_clients(
        request.app.state.db,
        page=page,
        per_page=per_page,
        subscription_status=subscription_status,
        client_status=client_status,
        attention_only=needs_attention,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/clients/{client_id}")
async def get_client(request: Request, client_id: str):
    try:
        return get_client_detail(request.app.state.db, client_id)
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")


@router.patch("/clients/{client_id}")
async def patch_client(request: Request, client_id: str, body: ClientUpdate):
    try:
        client = update_client(request.app.state.db, client_id, body)
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")
    return {"success": True, "client": client}


@router.post("/clients/{client_id}/checklist")
async def add_checklist_entry(request: Request, client_id: str, body: ChecklistEntryCreate):
    try:
        entry = record_checklist_action(request.app.state.db, client_id, body)
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")
    return {"success": True, "entry": entry}


@router.get("/clients/{client_id}/checklist")
async def list_checklist_entries(request: Request, client_id: str):
    try:
        return {"entries": get_checklist(request.app.state.db, client_id)}
    except ClientNotFoundError:
        raise HTTPException(status_code=404, detail="Client not found")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
