"""Attestation of check-ins by an external service"""

from checkin_rewards.attestation.client import (
    AttestationCreator,
    DisabledAttestationCreator,
    HttpAttestationClient,
)

__all__ = [
    "AttestationCreator",
    "DisabledAttestationCreator",
    "HttpAttestationClient",
]
