"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from engagement_gateway.domain.models import SigningAudit
from engagement_gateway.config import settings
from engagement_gateway.infrastructure.clients.engagement import EngagementClient
from engagement_gateway.infrastructure.clients.notification import NotificationClient
from engagement_gateway.infrastructure.clients.otp import OtpClient
from engagement_gateway.infrastructure.database.session import get_db
from engagement_gateway.services.contract_lifecycle import ContractLifecycle
from engagement_gateway.services.payment_schedule import PaymentScheduleEngine
from engagement_gateway.services.signature_ledger import SignatureLedger
from engagement_gateway.utils.date_utils import SystemClock


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    """Caller identity, set by the authenticating gateway in front of this service"""
    return x_user_id


def get_signing_audit(request: Request) -> SigningAudit:
    """Request metadata copied verbatim into signature audit records"""
    return SigningAudit(
        consent_text=settings.consent_text,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_clock() -> SystemClock:
    return SystemClock()


def get_otp_client() -> OtpClient:
    """Provide OTP service client instance"""
    return OtpClient()


def get_engagement_client() -> EngagementClient:
    """Provide engagement activation webhook client instance"""
    return EngagementClient()


def get_notification_client() -> NotificationClient:
    """Provide notification client instance"""
    return NotificationClient()


def get_schedule_engine(db: Session = Depends(get_db), clock: SystemClock = Depends(get_clock)) -> PaymentScheduleEngine:
    return PaymentScheduleEngine(db, clock)


def get_lifecycle(
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock),
    schedules: PaymentScheduleEngine = Depends(get_schedule_engine),
    otp_client: OtpClient = Depends(get_otp_client),
    engagement_client: EngagementClient = Depends(get_engagement_client),
    notification_client: NotificationClient = Depends(get_notification_client),
) -> ContractLifecycle:
    """Wire one lifecycle per request around the request's session"""
    ledger = SignatureLedger(db, otp_client, clock)
    return ContractLifecycle(db, schedules, ledger, engagement_client, notification_client, clock)
