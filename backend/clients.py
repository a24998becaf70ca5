"""
Client management for converted leads.

Clients are leads with is_client set. Operators page through them, flag the
ones that need attention, keep their billing metadata current and record
review checklist actions as an audit trail.
"""

import math
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from database import Database
from models import (
    ATTENTION_SUBSCRIPTION_STATUSES,
    CLIENT_STATUS_NEEDS_REVIEW,
    ChecklistEntryCreate,
    ClientListItem,
    ClientUpdate,
    PaginatedClients,
)

logger = logging.getLogger("CLIENTS")

PAYMENT_DUE_WINDOW = timedelta(days=7)


class ClientNotFoundError(LookupError):
    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client {client_id} not found")


def _require_client(db: Database, client_id: str) -> dict:
    client = db.get_client(client_id)
    if not client:
        raise ClientNotFoundError(client_id)
    return client


def attention_cutoff(now: Optional[datetime] = None) -> str:
    """Payments due on or before this ISO timestamp count as needing attention."""
    return ((now or datetime.now()) + PAYMENT_DUE_WINDOW).isoformat(timespec="microseconds")


def needs_attention(client: dict, cutoff: str) -> bool:
    due = client.get("next_payment_due_date")
    return (
        client.get("subscription_status") in ATTENTION_SUBSCRIPTION_STATUSES
        or client.get("client_status") == CLIENT_STATUS_NEEDS_REVIEW
        or bool(due and due <= cutoff)
    )


def _list_item(client: dict, cutoff: str) -> ClientListItem:
    return ClientListItem(
        id=client["id"],
        name=client["name"],
        address=client["address"],
        phone=client.get("phone"),
        website=client.get("website"),
        email=client.get("email"),
        client_status=client.get("client_status"),
        subscription_status=client.get("subscription_status"),
        initial_payment_status=client.get("initial_payment_status"),
        next_payment_due_date=client.get("next_payment_due_date"),
        converted_at=client.get("converted_at"),
        converted_by=client.get("converted_by"),
        updated_at=client.get("updated_at"),
        has_notes=bool(client.get("notes")),
        last_checklist_at=client.get("last_checklist_at"),
        needs_attention=needs_attention(client, cutoff),
    )


def list_clients(
    db: Database,
    page: int = 1,
    per_page: int = 20,
    subscription_status: Optional[str] = None,
    client_status: Optional[str] = None,
    attention_only: bool = False,
    sort_by: str = "updated_at",
    sort_order: str = "desc",
    now: Optional[datetime] = None,
) -> PaginatedClients:
    cutoff = attention_cutoff(now)
    rows, total = db.list_clients(
        page=page,
        per_page=per_page,
        subscription_status=subscription_status,
        client_status=client_status,
        attention_due_before=cutoff if attention_only else None,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return PaginatedClients(
        items=[_list_item(row, cutoff) for row in rows],
        total=total,
        page=page,
        per_page=per_page,
        total_pages=math.ceil(total / per_page) if per_page else 0,
    )


def get_client_detail(db: Database, client_id: str) -> dict:
    client = _require_client(db, client_id)
    client["contacts"] = db.get_contact_info(client_id)
    client["checklist"] = db.get_checklist_entries(client_id)
    client["needs_attention"] = needs_attention(client, attention_cutoff())
    return client


def update_client(db: Database, client_id: str, update: ClientUpdate) -> dict:
    """Write only the fields present in the request; an explicit null clears one."""
    _require_client(db, client_id)
    fields = update.model_dump(exclude_unset=True)
    if fields:
        db.update_lead(client_id, **fields)
        logger.info(f"Client {client_id} updated: {', '.join(sorted(fields))}")
    return db.get_client(client_id)


def record_checklist_action(db: Database, client_id: str, entry: ChecklistEntryCreate) -> dict:
    _require_client(db, client_id)
    notes = entry.notes or f"Checklist: {entry.action.value}"
    recorded = db.add_checklist_entry(client_id, entry.action, notes=notes, created_by=entry.user_id)
    logger.info(f"Client {client_id}: {entry.action.value}")
    return recorded


def get_checklist(db: Database, client_id: str) -> List[dict]:
    _require_client(db, client_id)
    return db.get_checklist_entries(client_id)
