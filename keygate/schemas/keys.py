"""Pydantic schemas for key lifecycle requests and responses."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from keygate.services.key_service import Credential


class IssueKeyRequest(BaseModel):
    """Request a key for an owner on a machine."""

    owner_id: str = Field(..., min_length=1, description="Identity of the requester.")
    hwid: str = Field(..., min_length=1, description="Hardware fingerprint of the client machine.")


class RebindHwidRequest(BaseModel):
    """Move an owner's key to another machine."""

    hwid: str = Field(..., min_length=1, description="New hardware fingerprint.")


class VerifyKeyRequest(BaseModel):
    """Client-side check that a key is live on the presenting machine."""

    key: str = Field(..., min_length=1)
    hwid: str = Field(..., min_length=1)


class CredentialResponse(BaseModel):
    """A key and its binding. Instants are milliseconds since the epoch."""

    key: str
    owner_id: str
    hwid: str
    issued_at: int
    expires_at: int
    expired: bool = Field(False, description="True if the key awaits removal by the next sweep.")

    @classmethod
    def from_credential(cls, credential: Credential, *, now_ms: int) -> "CredentialResponse":
        return cls(
            key=credential.key,
            owner_id=credential.owner_id,
            hwid=credential.hwid,
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
            expired=credential.is_expired(now_ms),
        )


class KeyListResponse(BaseModel):
    """One page of keys ordered by expiry."""

    total: int
    offset: int
    limit: int
    items: List[CredentialResponse] = Field(default_factory=list)


class VerifyKeyResponse(BaseModel):
    valid: bool
    expires_at: int | None = None


class RevokeResponse(BaseModel):
    revoked: bool


class ImportResponse(BaseModel):
    added: int = Field(..., description="Keys inserted into the table.")
    skipped: int = Field(..., description="Keys already present, expired or conflicting.")
    defects: int = Field(..., description="Records that could not be parsed.")


class SweepResponse(BaseModel):
    removed: int
