"""
pop_auth/ceremony.py

Boundary to the passkey (WebAuthn) ceremony verifier.

Attestation / assertion cryptography is NOT done here. The app recovers the
expected challenge and origin from the signed challenge cookie, then hands the
client's ceremony response to an injected CeremonyVerifier, for example a thin
adapter over a WebAuthn library together with a credential store.

The verifier reports which user the ceremony proved. For registration this is
the user the challenge was issued for. For discoverable-credential sign-in
(challenge issued with the empty userId) it is the credential's owner.
"""

from dataclasses import dataclass
from typing import Any, Dict, Protocol

from .models import ChallengeType


@dataclass(frozen=True)
class CeremonyOutcome:
    verified: bool
    user_id: str = ""
    reason: str = ""


class CeremonyVerifier(Protocol):
    async def verify(
        self,
        *,
        ceremony: ChallengeType,
        user_id: str,
        response: Dict[str, Any],
        expected_challenge: str,
        expected_origin: str,
        rp_id: str,
    ) -> CeremonyOutcome: ...
