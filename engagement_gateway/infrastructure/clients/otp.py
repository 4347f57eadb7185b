"""OTP delivery/verification HTTP client"""

import uuid
from datetime import datetime

import httpx

from engagement_gateway.config import settings
from engagement_gateway.domain.exceptions import CollaboratorUnavailableError
from engagement_gateway.domain.models import OtpChallenge, OtpVerification, SignerRole
from engagement_gateway.utils.date_utils import ensure_utc


class OtpClient:
    """Client for the external OTP service; raw codes never pass through here"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.otp_api_base
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def generate(
        self,
        contract_id: uuid.UUID,
        email: str,
        role: SignerRole,
        contract_label: str,
    ) -> OtpChallenge:
        """
        Ask the OTP service to issue and deliver a code.

        Raises:
            CollaboratorUnavailableError: On timeout, HTTP errors, or invalid response
        """
        data = await self._post(
            "/otp/generate",
            {
                "contract_id": str(contract_id),
                "email": email,
                "role": role.value,
                "contract_label": contract_label,
            },
        )
        try:
            return OtpChallenge(
                handle=data["handle"],
                expires_at=ensure_utc(datetime.fromisoformat(data["expires_at"])),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise CollaboratorUnavailableError(f"Invalid OTP service response: {e}") from e

    async def verify(self, handle: str, code: str) -> OtpVerification:
        """An unknown or expired handle comes back as matched=False"""
        data = await self._post("/otp/verify", {"handle": handle, "code": code})
        try:
            return OtpVerification(matched=bool(data["matched"]), otp_hash=data["otp_hash"])
        except (KeyError, TypeError) as e:
            raise CollaboratorUnavailableError(f"Invalid OTP service response: {e}") from e

    async def _post(self, path: str, payload: dict) -> dict:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(path, json=payload)
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as e:
                raise CollaboratorUnavailableError(f"OTP service timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise CollaboratorUnavailableError(f"OTP service error: {e.response.status_code}") from e
            except (httpx.RequestError, ValueError) as e:
                raise CollaboratorUnavailableError(f"OTP service unreachable: {e.__class__.__name__}") from e
