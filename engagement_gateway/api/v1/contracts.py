"""/v1/contracts - contract drafting, approval, signing and cancellation endpoints"""

import uuid
from typing import Optional
from fastapi import APIRouter, Depends, Query

from engagement_gateway.api.dependencies import get_current_user_id, get_lifecycle, get_signing_audit
from engagement_gateway.api.v1.schemas import (
    ApprovalRequest,
    AuditRecordSchema,
    AuditTrailResponse,
    CancelRequest,
    ContractCreateRequest,
    ContractListResponse,
    ContractResponse,
    DraftUpdateRequest,
    SignRequest,
    SignResponse,
    SigningChallengeResponse,
    SigningRequest,
)
from engagement_gateway.domain.models import (
    ContractDraft,
    ContractFilters,
    ContractStatus,
    DraftChanges,
    OtpEvidence,
    SignerRole,
    SigningAudit,
)
from engagement_gateway.services.contract_lifecycle import ContractLifecycle

router = APIRouter()


@router.post("/contracts", response_model=ContractResponse, status_code=201)
async def create_contract(
    body: ContractCreateRequest,
    user_id: str = Depends(get_current_user_id),
    audit: SigningAudit = Depends(get_signing_audit),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """
    Create a contract from an accepted negotiation.

    The caller must be the negotiation's tutor.
    """
    draft = ContractDraft(**body.model_dump(exclude={"auto_sign"}))
    contract = await lifecycle.create_contract(user_id, draft, auto_sign=body.auto_sign, audit=audit)
    return ContractResponse.from_domain(contract)


@router.get("/contracts", response_model=ContractListResponse)
def list_contracts(
    role: SignerRole = Query(SignerRole.STUDENT, description="List contracts where the caller has this role"),
    status: Optional[ContractStatus] = None,
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """List the caller's own contracts, most recent first"""
    filters = ContractFilters(
        student_id=user_id if role is SignerRole.STUDENT else None,
        tutor_id=user_id if role is SignerRole.TUTOR else None,
        status=status,
        limit=limit,
    )
    contracts = lifecycle.list_contracts(filters)
    return ContractListResponse(user_id=user_id, contracts=[ContractResponse.from_domain(c) for c in contracts])


@router.get("/contracts/pending-approval", response_model=ContractListResponse)
def pending_approval(
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """Contracts waiting for the calling student's decision"""
    contracts = lifecycle.pending_for_student(user_id)
    return ContractListResponse(user_id=user_id, contracts=[ContractResponse.from_domain(c) for c in contracts])


@router.get("/contracts/{contract_id}", response_model=ContractResponse)
def get_contract(
    contract_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    return ContractResponse.from_domain(lifecycle.get_contract(contract_id, user_id))


@router.patch("/contracts/{contract_id}", response_model=ContractResponse)
def update_draft(
    contract_id: uuid.UUID,
    body: DraftUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """Edit a DRAFT contract; only the provided fields change"""
    changes = DraftChanges(**body.model_dump(exclude_unset=True))
    return ContractResponse.from_domain(lifecycle.update_draft(contract_id, user_id, changes))


@router.post("/contracts/{contract_id}/submit", response_model=ContractResponse)
async def submit_for_approval(
    contract_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    contract = await lifecycle.submit_for_approval(contract_id, user_id)
    return ContractResponse.from_domain(contract)


@router.post("/contracts/{contract_id}/approval", response_model=ContractResponse)
async def respond_to_approval(
    contract_id: uuid.UUID,
    body: ApprovalRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """Student approves, rejects or sends the contract back for changes"""
    contract = await lifecycle.respond_to_approval(contract_id, user_id, body.action, body.reason)
    return ContractResponse.from_domain(contract)


@router.post("/contracts/{contract_id}/signing", response_model=SigningChallengeResponse)
async def initiate_signing(
    contract_id: uuid.UUID,
    body: SigningRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """Send a one-time code to the signer's email"""
    challenge = await lifecycle.initiate_signing(contract_id, user_id, body.role)
    return SigningChallengeResponse(
        contract_id=challenge.contract_id,
        role=challenge.role,
        email=challenge.email,
        handle=challenge.handle,
        expires_at=challenge.expires_at,
        consent_text=challenge.consent_text,
    )


@router.post("/contracts/{contract_id}/signature", response_model=SignResponse)
async def verify_and_sign(
    contract_id: uuid.UUID,
    body: SignRequest,
    user_id: str = Depends(get_current_user_id),
    audit: SigningAudit = Depends(get_signing_audit),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """
    Verify the code and record the signature.

    Flow:
    1. OTP verified by the OTP service, attempt written to the audit ledger
    2. Signature set on the contract (no-op if this role already signed)
    3. The request that completes both signatures activates the contract
    """
    evidence = OtpEvidence(handle=body.handle, code=body.code, audit=audit)
    outcome = await lifecycle.verify_and_sign(contract_id, user_id, body.role, evidence)
    return SignResponse(
        contract=ContractResponse.from_domain(outcome.contract),
        signature_record_id=outcome.record.id,
        fully_signed=outcome.fully_signed,
    )


@router.post("/contracts/{contract_id}/cancel", response_model=ContractResponse)
async def cancel_contract(
    contract_id: uuid.UUID,
    body: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    contract = await lifecycle.cancel_contract(contract_id, user_id, body.reason)
    return ContractResponse.from_domain(contract)


@router.get("/contracts/{contract_id}/audit-trail", response_model=AuditTrailResponse)
def audit_trail(
    contract_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    lifecycle: ContractLifecycle = Depends(get_lifecycle),
):
    """Every signing attempt plus an integrity check of the signed terms"""
    trail = lifecycle.audit_trail(contract_id, user_id)
    return AuditTrailResponse(
        contract_id=trail.contract_id,
        content_hash=trail.content_hash,
        integrity_valid=trail.integrity_valid,
        records=[AuditRecordSchema.from_domain(r) for r in trail.records],
    )
