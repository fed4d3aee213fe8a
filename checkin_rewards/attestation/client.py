"""
Attestation creator interface and HTTP client

A check-in can be notarized by an external attestation service before XP is
committed. The engine only needs one call: create an attestation for a
schema, a recipient wallet and a payload, and get back a reference id.
"""

import logging
import time
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from checkin_rewards.config import ATTESTATION_API_KEY, ATTESTATION_API_URL
from checkin_rewards.models.checkin import AttestationResult
from checkin_rewards.observability.metrics import record_attestation
from checkin_rewards.resilience.retry import retry_with_backoff

logger = logging.getLogger(__name__)

API_TIMEOUT = 10.0  # seconds


@runtime_checkable
class AttestationCreator(Protocol):
    """Creates tamper-evident attestations"""

    async def create_attestation(
        self,
        schema_id: str,
        recipient: str,
        payload: Dict[str, Any],
        signer: Any
    ) -> AttestationResult:
        """
        Returns:
            AttestationResult; failures are reported with success=False, not raised
        """
        ...


def signer_address(signer: Any) -> Optional[str]:
    """Wallet address of a signer given as an address string, a mapping or an object"""
    if signer is None or isinstance(signer, str):
        return signer
    if isinstance(signer, dict):
        return signer.get("address")
    return getattr(signer, "address", None)


class HttpAttestationClient:
    """
    Attestation service client over HTTP

    POST {api_url}/attestations with {schema_id, recipient, signer, data};
    the response carries the attestation id as "uid" (or "reference_id").
    Transient failures are retried with backoff.
    """

    def __init__(
        self,
        api_url: str = ATTESTATION_API_URL,
        api_key: str = ATTESTATION_API_KEY,
        timeout: float = API_TIMEOUT,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post_attestation(self, body: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(f"{self.api_url}/attestations", json=body, headers=self._headers())
            response.raise_for_status()
            return response.json()

    async def create_attestation(self, schema_id, recipient, payload, signer) -> AttestationResult:
        body = {
            "schema_id": schema_id,
            "recipient": recipient,
            "signer": signer_address(signer),
            "data": payload,
        }

        logger.info(f"Creating attestation for {recipient} (schema {schema_id})")
        started = time.perf_counter()

        try:
            data = await retry_with_backoff(self._post_attestation, body, max_retries=self.max_retries)
        except httpx.TimeoutException:
            record_attestation("failure", time.perf_counter() - started)
            logger.warning(f"Attestation API timeout for {recipient}")
            return AttestationResult(success=False, error="Attestation service timed out")
        except httpx.HTTPStatusError as e:
            record_attestation("failure", time.perf_counter() - started)
            logger.error(f"Attestation API HTTP error: {e.response.status_code} - {e.response.text}")
            return AttestationResult(
                success=False,
                error=f"Attestation service returned {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            record_attestation("failure", time.perf_counter() - started)
            logger.error(f"Attestation API error: {e}")
            return AttestationResult(success=False, error=f"Attestation request failed: {e}")

        reference_id = data.get("uid") or data.get("reference_id")
        if not reference_id:
            record_attestation("failure", time.perf_counter() - started)
            logger.error(f"Attestation API response without id: {data}")
            return AttestationResult(success=False, error="Attestation service returned no reference id")

        record_attestation("success", time.perf_counter() - started)
        logger.info(f"Attestation {reference_id} created for {recipient}")
        return AttestationResult(success=True, reference_id=reference_id)


class DisabledAttestationCreator:
    """Stand-in when attestations are administratively disabled"""

    async def create_attestation(self, schema_id, recipient, payload, signer) -> AttestationResult:
        logger.debug("Attestation requested while disabled")
        return AttestationResult(success=False, error="Attestations are disabled")
