from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum


class JobType(str, Enum):
    WEBSITE_VALIDATION = "website_validation"
    EMAIL_SCRAPING = "email_scraping"
    SOCIAL_SCRAPING = "social_scraping"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)


class WebsiteStatus(str, Enum):
    NO_WEBSITE = "no_website"
    SOCIAL_ONLY = "social_only"
    BROKEN = "broken"
    TECHNICAL_ISSUES = "technical_issues"
    OUTDATED = "outdated"
    ACCEPTABLE = "acceptable"
    UNKNOWN = "unknown"


# Outreach priority: leads with the weakest web presence come first
WEBSITE_STATUS_PRIORITY = [
    WebsiteStatus.NO_WEBSITE,
    WebsiteStatus.SOCIAL_ONLY,
    WebsiteStatus.BROKEN,
    WebsiteStatus.TECHNICAL_ISSUES,
    WebsiteStatus.OUTDATED,
    WebsiteStatus.ACCEPTABLE,
    WebsiteStatus.UNKNOWN,
]

WORKING_WEBSITE_STATUSES = (
    WebsiteStatus.ACCEPTABLE,
    WebsiteStatus.OUTDATED,
    WebsiteStatus.TECHNICAL_ISSUES,
)


class LeadStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONTACTED = "contacted"
    RESPONDED = "responded"
    INACTIVE = "inactive"


# Client health markers that put a client on the needs-attention list
ATTENTION_SUBSCRIPTION_STATUSES = ("payment_failed", "past_due", "unpaid")
CLIENT_STATUS_NEEDS_REVIEW = "needs_review"


class ChecklistAction(str, Enum):
    SUBSCRIPTION_VERIFIED = "subscription_verified"
    INITIAL_PAYMENT_CONFIRMED = "initial_payment_confirmed"
    ONBOARDING_COMPLETE = "onboarding_complete"
    PAYMENT_METHOD_UPDATED = "payment_method_updated"
    BILLING_ISSUE_RESOLVED = "billing_issue_resolved"
    CLIENT_CONTACTED = "client_contacted"


class EmailSource(str, Enum):
    SCRAPED = "scraped"
    PATTERN_MATCH = "pattern_match"
    MANUAL = "manual"
    GOOGLE_MAPS = "google_maps"


class LeadSource(str, Enum):
    GOOGLE_MAPS = "google_maps"
    MANUAL = "manual"


class Lead(BaseModel):
    id: Optional[str] = None
    name: str
    address: str
    phone: Optional[str] = None
    website: Optional[str] = None
    website_status: WebsiteStatus = WebsiteStatus.UNKNOWN
    lead_status: LeadStatus = LeadStatus.PENDING
    source: LeadSource = LeadSource.MANUAL
    notes: Optional[str] = None
    next_followup_at: Optional[str] = None
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_reason: Optional[str] = None
    is_client: bool = False
    converted_at: Optional[str] = None
    converted_by: Optional[str] = None
    client_status: Optional[str] = None
    subscription_status: Optional[str] = None
    initial_payment_status: Optional[str] = None
    next_payment_due_date: Optional[str] = None
    discovered_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ContactInfo(BaseModel):
    id: Optional[str] = None
    lead_id: str
    email: Optional[str] = None
    email_source: Optional[EmailSource] = None
    email_confidence: Optional[int] = Field(default=None, ge=0, le=100)
    phone: Optional[str] = None
    facebook_url: Optional[str] = None
    instagram_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class EnrichmentJob(BaseModel):
    id: str
    target_id: str
    job_type: JobType
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


# ==================== API REQUEST/RESPONSE MODELS ====================

class ProcessJobsRequest(BaseModel):
    max_jobs: Optional[int] = Field(default=None, ge=1, le=100)
    timeout_s: Optional[float] = Field(default=None, gt=0, le=300)


class ProcessJobsResponse(BaseModel):
    success: bool = True
    processed: int
    failed: int
    pending_count: int
    processing_time_ms: int


class EnqueueRequest(BaseModel):
    target_id: str
    job_types: List[JobType] = Field(default_factory=lambda: list(JobType))


class EnqueueResponse(BaseModel):
    job_ids: List[str]


class RetryJobRequest(BaseModel):
    job_id: str


class JobResponse(BaseModel):
    id: str
    target_id: str
    job_type: str
    status: str
    retry_count: int
    last_error: Optional[str]
    created_at: str
    started_at: Optional[str]
    completed_at: Optional[str]
    lead_name: Optional[str] = None
    website_status: Optional[str] = None


class FailedJobSummary(BaseModel):
    id: str
    job_type: str
    target_id: str
    lead_name: Optional[str]
    retry_count: int
    last_error: Optional[str]
    completed_at: Optional[str]


class QueueStatusResponse(BaseModel):
    queued: int
    running: int
    success: int
    failure: int
    total: int
    pending_count: int
    recent_failures: List[FailedJobSummary]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    facebook: Optional[str] = None
    instagram: Optional[str] = None


class DuplicateCheckRequest(BaseModel):
    name: str = Field(min_length=1)
    address: str = Field(min_length=1)


class LeadUpdate(BaseModel):
    notes: Optional[str] = None
    next_followup_at: Optional[str] = None


class BulkLeadAction(BaseModel):
    lead_ids: List[str] = Field(min_length=1)
    user_id: Optional[str] = None
    reason: Optional[str] = None


class LeadStatusChange(BaseModel):
    lead_id: str
    status: LeadStatus
    reason: Optional[str] = None


class ConvertToClientRequest(BaseModel):
    lead_id: str
    user_id: Optional[str] = None
    client_status: Optional[str] = None
    subscription_status: Optional[str] = None
    initial_payment_status: Optional[str] = None
    next_payment_due_date: Optional[str] = None


class LeadQueueItem(BaseModel):
    id: str
    name: str
    address: str
    phone: Optional[str]
    website: Optional[str]
    website_status: str
    lead_status: str
    discovered_at: Optional[str]
    has_email: bool
    has_phone: bool
    has_social: bool
    social_only: bool


class PaginatedLeads(BaseModel):
    items: List[LeadQueueItem]
    total: int
    page: int
    per_page: int
    total_pages: int


class ClientUpdate(BaseModel):
    client_status: Optional[str] = None
    subscription_status: Optional[str] = None
    initial_payment_status: Optional[str] = None
    next_payment_due_date: Optional[str] = None
    notes: Optional[str] = None


class ChecklistEntryCreate(BaseModel):
    action: ChecklistAction
    notes: Optional[str] = None
    user_id: Optional[str] = None


class ClientListItem(BaseModel):
    id: str
    name: str
    address: str
    phone: Optional[str]
    website: Optional[str]
    email: Optional[str] = None
    client_status: Optional[str]
    subscription_status: Optional[str]
    initial_payment_status: Optional[str]
    next_payment_due_date: Optional[str]
    converted_at: Optional[str]
    converted_by: Optional[str]
    updated_at: Optional[str]
    has_notes: bool
    last_checklist_at: Optional[str] = None
    needs_attention: bool


class PaginatedClients(BaseModel):
    items: List[ClientListItem]
    total: int
    page: int
    per_page: int
    total_pages: int
