from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr, model_validator

PROOF_TYPE = "dpop+jwt"
PROOF_ALG = "ES256"

ChallengeType = Literal["registration", "authentication"]


class Ceremony(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


# Private EC/RSA/oct members that must never appear in a public JWK
_PRIVATE_JWK_MEMBERS = ("d", "p", "q", "dp", "dq", "qi", "k")


# -----------------------------------------------------------------------------
# Proof wire objects
# -----------------------------------------------------------------------------
class PublicJwk(BaseModel):
    """Minimal EC P-256 public key: exactly kty, crv, x, y."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    kty: Literal["EC"]
    crv: Literal["P-256"]
    x: StrictStr
    y: StrictStr

    @model_validator(mode="before")
    @classmethod
    def reject_private_members(cls, data: Any) -> Any:
        if isinstance(data, dict) and any(k in data for k in _PRIVATE_JWK_MEMBERS):
            raise ValueError("jwk must not carry private key material")
        return data


class ProofHeader(BaseModel):
    model_config = ConfigDict(frozen=True)

    alg: Literal["ES256"] = PROOF_ALG
    typ: Literal["dpop+jwt"] = PROOF_TYPE
    jwk: PublicJwk


class ProofClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    htm: StrictStr
    htu: StrictStr
    iat: Union[StrictInt, StrictFloat]
    jti: StrictStr
    nonce: Optional[StrictStr] = None
    ath: Optional[StrictStr] = None


# -----------------------------------------------------------------------------
# Challenge wire objects
# -----------------------------------------------------------------------------
class ChallengeValue(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    challenge: StrictStr
    origin: StrictStr


class ChallengePayload(BaseModel):
    """
    Signed challenge cookie payload.

    ``userId`` may be the empty string for ceremonies that are not bound to a
    known user yet (discoverable-credential sign-in).
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    user_id: StrictStr = Field(alias="userId")
    type: ChallengeType
    value: ChallengeValue

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# -----------------------------------------------------------------------------
# HTTP request bodies
# -----------------------------------------------------------------------------
class ChallengeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(default="", alias="userId")


class CeremonyCompletion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(default="", alias="userId")
    response: Dict[str, Any]
