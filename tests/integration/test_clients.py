"""Collaborator HTTP clients exercised against the in-memory collaborator app"""

import hashlib
import uuid
import httpx
import pytest
from engagement_gateway.domain.exceptions import CollaboratorUnavailableError
from engagement_gateway.domain.models import SignerRole
from engagement_gateway.infrastructure.clients.engagement import EngagementClient
from engagement_gateway.infrastructure.clients.notification import NotificationClient
from engagement_gateway.infrastructure.clients.otp import OtpClient
from mock_services.collaborators.main import app as collaborators_app

BASE_URL = "http://collaborators"


@pytest.fixture
async def transport():
    transport = httpx.ASGITransport(app=collaborators_app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        await client.post("/reset")
    return transport


async def _get(transport, path: str, **params):
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        response = await client.get(path, params=params)
        return response.json()


async def test_otp_generate_and_verify(transport):
    otp = OtpClient(base_url=BASE_URL, transport=transport)
    contract_id = uuid.uuid4()

    challenge = await otp.generate(contract_id, "student@example.com", SignerRole.STUDENT, "Calculus tutoring")

    assert challenge.expires_at.tzinfo is not None
    delivered = await _get(transport, "/otp/outbox", email="student@example.com")
    assert len(delivered) == 1
    assert delivered[0]["handle"] == challenge.handle
    code = delivered[0]["code"]

    wrong = await otp.verify(challenge.handle, "000000" if code != "000000" else "111111")
    assert wrong.matched is False

    right = await otp.verify(challenge.handle, code)
    assert right.matched is True
    assert right.otp_hash == hashlib.sha256(code.encode()).hexdigest()

    # Codes are single use
    assert (await otp.verify(challenge.handle, code)).matched is False


async def test_otp_unknown_handle(transport):
    otp = OtpClient(base_url=BASE_URL, transport=transport)

    result = await otp.verify("no-such-handle", "123456")

    assert result.matched is False


async def test_otp_service_errors_are_unavailable():
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"detail": "boom"})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def garbage(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    for handler in (failing, unreachable, garbage):
        otp = OtpClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(CollaboratorUnavailableError):
            await otp.generate(uuid.uuid4(), "tutor@example.com", SignerRole.TUTOR, "Physics")


async def test_engagement_activation_delivered(transport):
    engagements = EngagementClient(webhook_url=f"{BASE_URL}/engagements/activate", transport=transport)
    payload = {"contract_id": str(uuid.uuid4()), "student_id": "student_1", "tutor_id": "tutor_1", "schedule_terms": {}}

    await engagements.activate(payload)

    assert await _get(transport, "/engagements") == [payload]


async def test_engagement_retries_then_succeeds():
    calls = []

    def flaky(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503) if len(calls) < 3 else httpx.Response(200, json={"status": "created"})

    engagements = EngagementClient(webhook_url=f"{BASE_URL}/engagements/activate", transport=httpx.MockTransport(flaky))
    engagements.backoff_base = 0
    engagements.max_retries = 5

    await engagements.activate({"contract_id": "c1"})

    assert len(calls) == 3


async def test_engagement_gives_up_after_max_retries():
    calls = []

    def down(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502)

    engagements = EngagementClient(webhook_url=f"{BASE_URL}/engagements/activate", transport=httpx.MockTransport(down))
    engagements.backoff_base = 0
    engagements.max_retries = 2

    with pytest.raises(httpx.HTTPStatusError):
        await engagements.activate({"contract_id": "c1"})
    assert len(calls) == 2


async def test_engagement_rejection_is_not_retried():
    calls = []

    def rejecting(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, json={"detail": "unknown tutor"})

    engagements = EngagementClient(webhook_url=f"{BASE_URL}/engagements/activate", transport=httpx.MockTransport(rejecting))
    engagements.backoff_base = 0

    with pytest.raises(httpx.HTTPStatusError):
        await engagements.activate({"contract_id": "c1"})
    assert len(calls) == 1
    assert calls[0].headers["Idempotency-Key"] == "c1"


async def test_notification_posted(transport):
    notifier = NotificationClient(base_url=BASE_URL, transport=transport)

    await notifier.notify("tutor_1", "contract_signed_by_party", {"contract_id": "c1", "role": "student"})

    sent = await _get(transport, "/notifications", user_id="tutor_1")
    assert sent == [
        {"user_id": "tutor_1", "event_type": "contract_signed_by_party", "payload": {"contract_id": "c1", "role": "student"}}
    ]
    assert await _get(transport, "/notifications", user_id="student_1") == []


async def test_notification_failure_raises():
    notifier = NotificationClient(base_url=BASE_URL, transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with pytest.raises(httpx.HTTPStatusError):
        await notifier.notify("student_1", "contract_activated", {})
