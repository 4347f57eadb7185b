"""Contract lifecycle rules: state sets, party checks and content hashing"""

import hashlib
import json
from typing import Optional

from engagement_gateway.domain.exceptions import InvalidTermsError, PermissionDeniedError
from engagement_gateway.domain.models import Contract, ContractStatus, DraftChanges, SignerRole

# APPROVED plus the per-party waiting states form the "approved, partially signed" family
SIGNABLE_STATUSES = {
    ContractStatus.APPROVED,
    ContractStatus.PENDING_TUTOR_SIGNATURE,
    ContractStatus.PENDING_STUDENT_SIGNATURE,
}
CANCELLABLE_STATUSES = {ContractStatus.DRAFT, ContractStatus.PENDING_STUDENT_APPROVAL} | SIGNABLE_STATUSES
TERMINAL_STATUSES = {ContractStatus.CANCELLED, ContractStatus.EXPIRED, ContractStatus.COMPLETED}

# Status spellings written by the older plain-signature flow
LEGACY_STATUS_ALIASES = {
    "PENDING_STUDENT": ContractStatus.PENDING_STUDENT_SIGNATURE,
    "PENDING_TUTOR": ContractStatus.PENDING_TUTOR_SIGNATURE,
    "REJECTED": ContractStatus.CANCELLED,
}


def parse_status(raw: str) -> ContractStatus:
    if raw in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[raw]
    return ContractStatus(raw)


def compute_total(price_per_session: int, total_sessions: int) -> int:
    if price_per_session <= 0:
        raise InvalidTermsError("Price per session must be positive")
    if total_sessions < 1:
        raise InvalidTermsError("A contract needs at least one session")
    return price_per_session * total_sessions


def require_party(contract: Contract, user_id: str, role: Optional[SignerRole] = None) -> None:
    """Identity is checked before state so permission errors stay distinct"""
    if role is None:
        if not contract.is_party(user_id):
            raise PermissionDeniedError()
    elif contract.party_id(role) != user_id:
        raise PermissionDeniedError(f"Only the contract's {role.value} can act as {role.value}")


def compute_content_hash(contract: Contract) -> str:
    """SHA-256 over the canonical JSON of the negotiated terms"""
    payload = {
        "negotiation_id": contract.negotiation_id,
        "student_id": contract.student_id,
        "tutor_id": contract.tutor_id,
        "subject_id": contract.subject_id,
        "title": contract.title,
        "price_per_session": contract.price_per_session,
        "session_duration": contract.session_duration,
        "total_sessions": contract.total_sessions,
        "total_amount": contract.total_amount,
        "payment_method": contract.payment_method.value,
        "installment_count": contract.installment_count,
        "down_payment": contract.down_payment,
        "first_payment_percentage": contract.first_payment_percentage,
        "start_date": contract.start_date.isoformat() if contract.start_date else None,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def apply_draft_changes(contract: Contract, changes: DraftChanges) -> None:
    for name, value in vars(changes).items():
        if value is not None:
            setattr(contract, name, value)
    if contract.session_duration <= 0:
        raise InvalidTermsError("Session duration must be positive")
    contract.total_amount = compute_total(contract.price_per_session, contract.total_sessions)
