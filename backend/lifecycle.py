"""
Lead lifecycle rules.

pending -> approved/rejected, approved -> contacted/rejected,
contacted -> responded/inactive, responded -> inactive.
rejected and inactive are terminal. Staying in the same state is always allowed.

Converting a lead to a client is a separate flag, gated on the lead being
approved and not already a client.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from models import LeadStatus

VALID_TRANSITIONS: Dict[LeadStatus, List[LeadStatus]] = {
    LeadStatus.PENDING: [LeadStatus.APPROVED, LeadStatus.REJECTED],
    LeadStatus.APPROVED: [LeadStatus.CONTACTED, LeadStatus.REJECTED],
    LeadStatus.REJECTED: [],
    LeadStatus.CONTACTED: [LeadStatus.RESPONDED, LeadStatus.INACTIVE],
    LeadStatus.RESPONDED: [LeadStatus.INACTIVE],
    LeadStatus.INACTIVE: [],
}


@dataclass
class TransitionCheck:
    from_status: LeadStatus
    to_status: LeadStatus
    allowed: bool
    reason: Optional[str] = None


@dataclass
class ConversionCheck:
    allowed: bool
    current_status: Optional[LeadStatus] = None
    reason: Optional[str] = None


class LifecycleError(Exception):
    pass


class InvalidStateTransitionError(LifecycleError):
    def __init__(self, from_status: LeadStatus, to_status: LeadStatus, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message or f"Invalid state transition from {from_status.value} to {to_status.value}")


class InvalidConversionError(LifecycleError):
    def __init__(self, message: str, current_status: Optional[LeadStatus] = None):
        self.current_status = current_status
        super().__init__(message)


def _status(value: Union[LeadStatus, str]) -> LeadStatus:
    return value if isinstance(value, LeadStatus) else LeadStatus(value)


def is_valid_transition(from_status, to_status) -> bool:
    from_status, to_status = _status(from_status), _status(to_status)
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def get_valid_next_states(from_status) -> List[LeadStatus]:
    return list(VALID_TRANSITIONS.get(_status(from_status), []))


def check_transition(from_status, to_status) -> TransitionCheck:
    from_status, to_status = _status(from_status), _status(to_status)
    allowed = is_valid_transition(from_status, to_status)
    reason = None
    if not allowed:
        valid = ", ".join(s.value for s in get_valid_next_states(from_status)) or "none"
        reason = (
            f"Invalid transition from {from_status.value} to {to_status.value}. "
            f"Valid transitions from {from_status.value}: {valid}"
        )
    return TransitionCheck(from_status=from_status, to_status=to_status, allowed=allowed, reason=reason)


def assert_valid_transition(from_status, to_status):
    check = check_transition(from_status, to_status)
    if not check.allowed:
        raise InvalidStateTransitionError(check.from_status, check.to_status, check.reason)


def check_conversion(lead: dict) -> ConversionCheck:
    """lead is a row dict with at least lead_status and is_client."""
    current = _status(lead["lead_status"])
    if lead.get("is_client"):
        return ConversionCheck(allowed=False, current_status=current, reason="Lead is already a client")
    if current != LeadStatus.APPROVED:
        return ConversionCheck(
            allowed=False,
            current_status=current,
            reason=f"Only approved leads can be converted to clients, current status: {current.value}",
        )
    return ConversionCheck(allowed=True, current_status=current)


def assert_can_convert_to_client(lead: dict):
    check = check_conversion(lead)
    if not check.allowed:
        raise InvalidConversionError(check.reason, check.current_status)
