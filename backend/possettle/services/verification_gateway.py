# Overview: Verification gateways that confirm wire transfer and QR tenders were received.

"""
Verification Gateway

WHY: Wire transfers and QR payments are confirmed asynchronously by the
bank or payment provider, and funds can fail to arrive. A gateway answers
one question per tender reference:

- CONFIRMED: funds received for at least the tendered amount
- NOT_FOUND: no matching payment exists (or it was rejected)
- PENDING: provider knows the payment but it has not cleared yet

Transport problems are raised (GatewayTimeout, GatewayUnavailable), never
mapped to a result, so a tender is never failed because a network hop was slow.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from .errors import GatewayTimeout, GatewayUnavailable


CHECK_CONFIRMED = "CONFIRMED"
CHECK_NOT_FOUND = "NOT_FOUND"
CHECK_PENDING = "PENDING"

VALID_CHECK_RESULTS = (CHECK_CONFIRMED, CHECK_NOT_FOUND, CHECK_PENDING)

# Provider statuses (lowercased) meaning the funds are in
CONFIRMED_PROVIDER_STATUSES = {"approved", "accredited", "confirmed", "completed"}
# Provider statuses meaning the payment will never arrive
REJECTED_PROVIDER_STATUSES = {"rejected", "cancelled", "canceled", "refunded", "charged_back", "expired"}


class VerificationGateway(ABC):
    """External capability that confirms asynchronous tenders."""

    @abstractmethod
    async def check(self, reference: str, *, kind: str, amount_cents: int) -> str:
        """Return CHECK_CONFIRMED, CHECK_NOT_FOUND or CHECK_PENDING."""


class HttpVerificationGateway(VerificationGateway):
    """
    Provider REST lookup: GET {base_url}/payments/{reference}

    The reference is percent-encoded as a single path segment.

    Expected body: {"status": "...", "amount_cents": 1234}
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def check(self, reference: str, *, kind: str, amount_cents: int) -> str:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                response = await client.get(f"/payments/{quote(reference, safe='')}", params={"kind": kind})
            except httpx.TimeoutException as exc:
                raise GatewayTimeout(f"Verification provider timed out for {reference}") from exc
            except httpx.HTTPError as exc:
                raise GatewayUnavailable(f"Verification provider unreachable: {exc}") from exc

        if response.status_code == 404:
            return CHECK_NOT_FOUND
        if response.status_code != 200:
            raise GatewayUnavailable(
                f"Verification provider answered HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayUnavailable("Verification provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise GatewayUnavailable("Verification provider returned an unexpected body")

        status = str(payload.get("status") or "").lower()
        if status in REJECTED_PROVIDER_STATUSES:
            return CHECK_NOT_FOUND
        if status not in CONFIRMED_PROVIDER_STATUSES:
            return CHECK_PENDING

        received = payload.get("amount_cents")
        if received is not None:
            try:
                received = int(received)
            except (TypeError, ValueError) as exc:
                raise GatewayUnavailable("Verification provider returned an invalid amount") from exc
        # A short payment is not the one being verified
        if received is not None and received < amount_cents:
            return CHECK_NOT_FOUND
        return CHECK_CONFIRMED


class StaticVerificationGateway(VerificationGateway):
    """In-memory gateway for development and tests. Unknown references are PENDING."""

    def __init__(self, results: dict[str, str] | None = None, default: str = CHECK_PENDING):
        self.results = dict(results or {})
        self.default = default
        self.calls: list[str] = []

    def set_result(self, reference: str, result: str) -> None:
        if result not in VALID_CHECK_RESULTS:
            raise ValueError(f"Invalid check result: {result}")
        self.results[reference] = result

    async def check(self, reference: str, *, kind: str, amount_cents: int) -> str:
        self.calls.append(reference)
        return self.results.get(reference, self.default)


def build_gateway(config) -> VerificationGateway | None:
    """Gateway from app config, or None when no provider is configured."""
    base_url = config.get("VERIFICATION_GATEWAY_URL")
    if not base_url:
        return None
    return HttpVerificationGateway(
        base_url,
        token=config.get("VERIFICATION_GATEWAY_TOKEN"),
        timeout_seconds=float(config.get("VERIFICATION_TIMEOUT_SECONDS", 10)),
    )
