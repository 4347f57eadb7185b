"""Tests for the data access layer"""

import uuid
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy.orm import Session
from engagement_gateway.domain.models import (
    Contract,
    ContractFilters,
    ContractStatus,
    PartySignature,
    PaymentMethod,
    SignatureKind,
    SignerRole,
)
from engagement_gateway.infrastructure.database.models import ContractModel
from engagement_gateway.infrastructure.database.repositories import (
    ContractRepository,
    NegotiationRepository,
    UserRepository,
    signature_from_legacy_document,
)
from engagement_gateway.utils.date_utils import FixedClock


def _contract(clock: FixedClock, **overrides) -> Contract:
    fields = dict(
        id=uuid.uuid4(),
        negotiation_id=f"neg-{uuid.uuid4()}",
        student_id="student_1",
        tutor_id="tutor_1",
        subject_id="math",
        title="Algebra",
        price_per_session=50_000,
        session_duration=45,
        total_sessions=4,
        total_amount=200_000,
        payment_method=PaymentMethod.FULL_PAYMENT,
        created_at=clock.now(),
        expires_at=clock.now() + timedelta(days=7),
    )
    fields.update(overrides)
    return Contract(**fields)


def test_compare_and_set_detects_stale_version(db: Session, clock: FixedClock):
    repo = ContractRepository(db)
    contract = _contract(clock)
    repo.add(contract)
    db.commit()

    first = repo.get(contract.id)
    second = repo.get(contract.id)

    first.status = ContractStatus.PENDING_STUDENT_APPROVAL
    assert repo.compare_and_set(first, first.version) is True
    assert first.version == 1

    second.status = ContractStatus.CANCELLED
    assert repo.compare_and_set(second, second.version) is False
    db.commit()

    stored = repo.get(contract.id)
    assert stored.status == ContractStatus.PENDING_STUDENT_APPROVAL
    assert stored.version == 1


def test_signature_fields_round_trip(db: Session, clock: FixedClock):
    repo = ContractRepository(db)
    contract = _contract(clock)
    repo.add(contract)
    db.commit()

    loaded = repo.get(contract.id)
    loaded.set_signature(
        SignerRole.TUTOR,
        PartySignature(
            kind=SignatureKind.AUTO_SIGNED, signed_at=clock.now(), signature_ref=uuid.uuid4(), ip_address="10.1.1.1"
        ),
    )
    repo.compare_and_set(loaded, loaded.version)
    db.commit()

    stored = repo.get(contract.id)
    assert stored.tutor_signature == loaded.tutor_signature
    assert stored.tutor_signature.signed_at.tzinfo is not None
    assert stored.student_signature is None
    assert stored.is_fully_signed is False


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("PENDING_STUDENT", ContractStatus.PENDING_STUDENT_SIGNATURE),
        ("PENDING_TUTOR", ContractStatus.PENDING_TUTOR_SIGNATURE),
        ("REJECTED", ContractStatus.CANCELLED),
        ("APPROVED", ContractStatus.APPROVED),
    ],
)
def test_legacy_status_names_are_read(db: Session, clock: FixedClock, raw, expected):
    repo = ContractRepository(db)
    contract = _contract(clock)
    repo.add(contract)
    db.query(ContractModel).filter(ContractModel.id == contract.id).update({"status": raw})
    db.commit()

    assert repo.get(contract.id).status == expected


def test_list_filters_and_expirable(db: Session, clock: FixedClock):
    repo = ContractRepository(db)
    draft = _contract(clock)
    active = _contract(clock, status=ContractStatus.ACTIVE, student_id="student_2")
    fresh = _contract(clock, expires_at=clock.now() + timedelta(days=30))
    for contract in (draft, active, fresh):
        repo.add(contract)
    db.commit()

    assert {c.id for c in repo.list(ContractFilters(tutor_id="tutor_1"))} == {draft.id, active.id, fresh.id}
    assert [c.id for c in repo.list(ContractFilters(student_id="student_2"))] == [active.id]
    assert [c.id for c in repo.list(ContractFilters(status=ContractStatus.ACTIVE))] == [active.id]
    assert len(repo.list(ContractFilters(tutor_id="tutor_1", limit=1))) == 1

    expirable = repo.list_expirable(clock.now() + timedelta(days=8))
    assert [c.id for c in expirable] == [draft.id]


def test_plain_legacy_signature():
    document = {
        "_id": "64b7f0c2a1",
        "studentSignature": {
            "signedAt": "2024-11-02T10:15:00Z",
            "ipAddress": "192.168.0.4",
            "signatureData": "data:image/png;base64,AAAA",
        },
    }

    signature = signature_from_legacy_document(document, SignerRole.STUDENT)

    assert signature.kind == SignatureKind.LEGACY
    assert signature.signed_at == datetime(2024, 11, 2, 10, 15, tzinfo=timezone.utc)
    assert signature.ip_address == "192.168.0.4"
    assert signature.signature_ref == signature_from_legacy_document(document, SignerRole.STUDENT).signature_ref
    assert signature_from_legacy_document(document, SignerRole.TUTOR) is None


def test_otp_legacy_signature():
    document = {"_id": "64b7f0c2a1", "tutorSignedAt": datetime(2024, 11, 3, 8, 0)}

    signature = signature_from_legacy_document(document, SignerRole.TUTOR)

    assert signature.kind == SignatureKind.OTP_VERIFIED
    assert signature.signed_at == datetime(2024, 11, 3, 8, 0, tzinfo=timezone.utc)
    assert signature.ip_address is None
    assert signature.signature_ref != signature_from_legacy_document(
        {"_id": "64b7f0c2a1", "studentSignedAt": "2024-11-03T08:00:00+00:00"}, SignerRole.STUDENT
    ).signature_ref


def test_negotiation_and_user_lookup(db: Session):
    negotiation = NegotiationRepository(db).get("neg_1")
    assert negotiation.status == "ACCEPTED"
    assert negotiation.tutor_id == "tutor_1"
    assert NegotiationRepository(db).get("nope") is None

    user = UserRepository(db).get("tutor_1")
    assert user.email == "tutor@example.com"
    assert UserRepository(db).get("nope") is None
