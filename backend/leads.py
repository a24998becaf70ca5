"""
Lead intake, review queue and operator actions.

Every status change goes through the lifecycle rules; bulk actions are
all-or-nothing so a partially applied approval never happens.
"""

import math
import logging
from typing import List, Optional, Tuple

from database import Database, now_iso
from job_queue import JobQueue
from lifecycle import (
    LifecycleError,
    assert_can_convert_to_client,
    assert_valid_transition,
    check_conversion,
    check_transition,
)
from models import (
    WORKING_WEBSITE_STATUSES,
    ConvertToClientRequest,
    EmailSource,
    JobType,
    Lead,
    LeadCreate,
    LeadQueueItem,
    LeadSource,
    LeadStatus,
    LeadUpdate,
    PaginatedLeads,
    WebsiteStatus,
)
from social_scraper import SocialMediaUrls, is_social_only

logger = logging.getLogger("LEADS")

MANUAL_EMAIL_CONFIDENCE = 100


class LeadNotFoundError(LookupError):
    def __init__(self, lead_id: str):
        self.lead_id = lead_id
        super().__init__(f"Lead {lead_id} not found")


class BulkTransitionError(LifecycleError):
    """One or more leads cannot make the requested move; nothing was written."""

    def __init__(self, to_status: LeadStatus, details: List[dict]):
        self.to_status = to_status
        self.details = details
        super().__init__(f"Invalid state transitions to {to_status.value} for {len(details)} lead(s)")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_lead(db: Database, lead_id: str) -> dict:
    lead = db.get_lead(lead_id)
    if not lead:
        raise LeadNotFoundError(lead_id)
    return lead


# ==================== INTAKE ====================

def create_lead(db: Database, queue: JobQueue, data: LeadCreate) -> Tuple[dict, List[str]]:
    """Store a manually entered lead and queue all enrichment jobs for it."""
    lead = Lead(
        name=data.name.strip(),
        address=data.address.strip(),
        phone=_clean(data.phone),
        website=_clean(data.website),
        source=LeadSource.MANUAL,
        lead_status=LeadStatus.PENDING,
        website_status=WebsiteStatus.UNKNOWN,
    )
    lead_id = db.add_lead(lead)

    email = _clean(data.email)
    facebook = _clean(data.facebook)
    instagram = _clean(data.instagram)
    if email or facebook or instagram:
        db.add_contact_info(
            lead_id,
            email=email.lower() if email else None,
            email_source=EmailSource.MANUAL if email else None,
            email_confidence=MANUAL_EMAIL_CONFIDENCE if email else None,
            facebook_url=facebook,
            instagram_url=instagram,
        )

    job_ids = queue.enqueue_batch((lead_id, job_type) for job_type in JobType)
    logger.info(f"NEW lead {lead.name} ({lead_id}), queued {len(job_ids)} enrichment jobs")
    return db.get_lead(lead_id), job_ids


def check_duplicate(db: Database, name: str, address: str) -> Optional[dict]:
    return db.find_duplicate_lead(name, address)


# ==================== LIFECYCLE ACTIONS ====================

def _transition_problems(to_status: LeadStatus):
    def check(ids: List[str], leads: dict) -> List[dict]:
        details = []
        for lead_id in ids:
            lead = leads.get(lead_id)
            if lead is None:
                details.append({"id": lead_id, "name": None, "current_status": None, "message": "Lead not found"})
                continue
            result = check_transition(lead["lead_status"], to_status)
            if not result.allowed:
                details.append({
                    "id": lead_id,
                    "name": lead["name"],
                    "current_status": lead["lead_status"],
                    "message": result.reason,
                })
        return details
    return check


def _bulk_transition(db: Database, lead_ids: List[str], to_status: LeadStatus, **fields) -> int:
    count, details = db.update_leads_checked(
        lead_ids, _transition_problems(to_status), lead_status=to_status, **fields
    )
    if details:
        logger.warning(f"Refusing bulk move to {to_status.value}: {len(details)} invalid lead(s)")
        raise BulkTransitionError(to_status, details)

    logger.info(f"{count} lead(s) moved to {to_status.value}")
    return count


def _single_transition(db: Database, lead_id: str, to_status: LeadStatus, **fields) -> dict:
    _, details = db.update_leads_checked(
        [lead_id], _transition_problems(to_status), lead_status=to_status, **fields
    )
    if details:
        current = details[0]["current_status"]
        if current is None:
            raise LeadNotFoundError(lead_id)
        assert_valid_transition(current, to_status)
    return db.get_lead(lead_id)


def approve_leads(db: Database, lead_ids: List[str], user_id: Optional[str] = None) -> int:
    return _bulk_transition(
        db, lead_ids, LeadStatus.APPROVED,
        approved_at=now_iso(),
        approved_by=user_id,
    )


def reject_leads(db: Database, lead_ids: List[str], user_id: Optional[str] = None, reason: Optional[str] = None) -> int:
    return _bulk_transition(
        db, lead_ids, LeadStatus.REJECTED,
        rejected_at=now_iso(),
        rejected_by=user_id,
        rejected_reason=_clean(reason),
    )


def mark_inactive(db: Database, lead_id: str, reason: Optional[str] = None) -> dict:
    stamp = now_iso()
    reason = _clean(reason)
    note = f"Marked inactive: {reason}\nDate: {stamp}" if reason else f"Marked inactive at {stamp}"
    lead = _single_transition(db, lead_id, LeadStatus.INACTIVE, notes=note)
    logger.info(f"{lead['name']} marked inactive")
    return lead


def change_status(db: Database, lead_id: str, status: LeadStatus, reason: Optional[str] = None,
                  user_id: Optional[str] = None) -> dict:
    """Single-lead status change, used for contacted/responded and friends."""
    status = LeadStatus(status)
    if status == LeadStatus.INACTIVE:
        return mark_inactive(db, lead_id, reason)

    if status == LeadStatus.APPROVED:
        lead = _single_transition(db, lead_id, status, approved_at=now_iso(), approved_by=user_id)
    elif status == LeadStatus.REJECTED:
        lead = _single_transition(db, lead_id, status, rejected_at=now_iso(), rejected_by=user_id,
                                  rejected_reason=_clean(reason))
    else:
        lead = _single_transition(db, lead_id, status)
    logger.info(f"{lead['name']} -> {status.value}")
    return lead


def _conversion_problems(ids: List[str], leads: dict) -> List[dict]:
    lead = leads.get(ids[0])
    if lead is None:
        return [{"id": ids[0], "lead": None}]
    if not check_conversion(lead).allowed:
        return [{"id": ids[0], "lead": lead}]
    return []


def convert_to_client(db: Database, request: ConvertToClientRequest) -> dict:
    _, problems = db.update_leads_checked(
        [request.lead_id],
        _conversion_problems,
        is_client=1,
        converted_at=now_iso(),
        converted_by=request.user_id,
        client_status=request.client_status,
        subscription_status=request.subscription_status,
        initial_payment_status=request.initial_payment_status,
        next_payment_due_date=request.next_payment_due_date,
    )
    if problems:
        if problems[0]["lead"] is None:
            raise LeadNotFoundError(request.lead_id)
        assert_can_convert_to_client(problems[0]["lead"])

    lead = db.get_lead(request.lead_id)
    logger.info(f"{lead['name']} converted to client")
    return lead


def update_lead_details(db: Database, lead_id: str, update: LeadUpdate) -> dict:
    _require_lead(db, lead_id)
    fields = update.model_dump(exclude_unset=True)
    if fields:
        db.update_lead(lead_id, **fields)
    return db.get_lead(lead_id)


# ==================== REVIEW QUEUE ====================

def get_lead_detail(db: Database, lead_id: str) -> dict:
    lead = _require_lead(db, lead_id)
    lead["contacts"] = db.get_contact_info(lead_id)
    lead["jobs"] = db.get_jobs_for_target(lead_id)
    return lead


def _queue_item(lead: dict) -> LeadQueueItem:
    contacts = lead.get("contacts", [])
    urls = SocialMediaUrls(
        facebook_url=next((c["facebook_url"] for c in contacts if c.get("facebook_url")), None),
        instagram_url=next((c["instagram_url"] for c in contacts if c.get("instagram_url")), None),
        linkedin_url=next((c["linkedin_url"] for c in contacts if c.get("linkedin_url")), None),
    )
    has_working_website = lead["website_status"] in {s.value for s in WORKING_WEBSITE_STATUSES}

    return LeadQueueItem(
        id=lead["id"],
        name=lead["name"],
        address=lead["address"],
        phone=lead.get("phone"),
        website=lead.get("website"),
        website_status=lead["website_status"],
        lead_status=lead["lead_status"],
        discovered_at=lead.get("discovered_at"),
        has_email=any(c.get("email") for c in contacts),
        has_phone=bool(lead.get("phone")) or any(c.get("phone") for c in contacts),
        has_social=urls.found_count() > 0,
        social_only=is_social_only(has_working_website, urls),
    )


def review_queue(
    db: Database,
    page: int = 1,
    per_page: int = 50,
    lead_status: Optional[LeadStatus] = LeadStatus.PENDING,
    website_status: Optional[WebsiteStatus] = None,
    sort_by: str = "priority",
    sort_order: str = "asc",
) -> PaginatedLeads:
    rows, total = db.list_leads(
        page=page,
        per_page=per_page,
        lead_status=lead_status,
        website_status=website_status,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return PaginatedLeads(
        items=[_queue_item(row) for row in rows],
        total=total,
        page=page,
        per_page=per_page,
        total_pages=math.ceil(total / per_page) if per_page else 0,
    )
