"""In-memory stand-in for the OTP, engagement activation and notification services"""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI
from pydantic import BaseModel

OTP_TTL = timedelta(minutes=5)

app = FastAPI(title="Mock Collaborator Server", version="1.0.0")

# handle -> issued challenge; outbox keeps what would have been emailed
challenges: Dict[str, Dict[str, Any]] = {}
outbox: list = []
activations: list = []
notifications: list = []


class GenerateRequest(BaseModel):
    contract_id: str
    email: str
    role: str
    contract_label: str


class VerifyRequest(BaseModel):
    handle: str
    code: str


class NotificationRequest(BaseModel):
    user_id: str
    event_type: str
    payload: Dict[str, Any] = {}


def _hash(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/otp/generate")
def generate_otp(body: GenerateRequest):
    handle = str(uuid.uuid4())
    code = f"{secrets.randbelow(1_000_000):06d}"
    expires_at = datetime.now(timezone.utc) + OTP_TTL
    challenges[handle] = {"code": code, "expires_at": expires_at, "used": False}
    outbox.append({"email": body.email, "handle": handle, "code": code, "contract_label": body.contract_label})
    return {"handle": handle, "expires_at": expires_at.isoformat()}


@app.post("/otp/verify")
def verify_otp(body: VerifyRequest):
    challenge = challenges.get(body.handle)
    matched = (
        challenge is not None
        and not challenge["used"]
        and challenge["expires_at"] > datetime.now(timezone.utc)
        and secrets.compare_digest(challenge["code"], body.code)
    )
    if matched:
        challenge["used"] = True
    return {"matched": matched, "otp_hash": _hash(body.code)}


@app.get("/otp/outbox")
def read_outbox(email: Optional[str] = None):
    """Test helper: the codes that would have been delivered"""
    return [m for m in outbox if email is None or m["email"] == email]


@app.post("/engagements/activate")
def activate_engagement(payload: Dict[str, Any]):
    activations.append(payload)
    return {"status": "created", "contract_id": payload.get("contract_id")}


@app.get("/engagements")
def list_engagements():
    return activations


@app.post("/notifications", status_code=202)
def send_notification(body: NotificationRequest):
    notifications.append(body.model_dump())
    return {"status": "queued"}


@app.get("/notifications")
def list_notifications(user_id: Optional[str] = None):
    return [n for n in notifications if user_id is None or n["user_id"] == user_id]


@app.post("/reset")
def reset():
    for store in (challenges, outbox, activations, notifications):
        store.clear()
    return {"status": "ok"}
