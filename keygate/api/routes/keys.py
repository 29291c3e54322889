from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile, status

from keygate.core.auth import verify_admin_key, verify_api_key
from keygate.core.errors import INVALID_HWID, NOT_BOUND, NotFoundAppError, ValidationAppError
from keygate.core.file_validation import read_upload_file_limited, validate_key_table_filename
from keygate.core.logging import hash_for_log
from keygate.core.rate_limit import ISSUE_ACTION, REBIND_ACTION, VERIFY_ACTION, enforce_rate_limit
from keygate.schemas.keys import (
    CredentialResponse,
    ImportResponse,
    IssueKeyRequest,
    KeyListResponse,
    RebindHwidRequest,
    RevokeResponse,
    SweepResponse,
    VerifyKeyRequest,
    VerifyKeyResponse,
)
from keygate.services.key_service import KeyLifecycleService

router = APIRouter(tags=["Keys"])

# Marks operations that need an admin key in the generated OpenAPI schema
ADMIN_OPERATION = {"x-required-role": "admin"}


def get_key_service(request: Request) -> KeyLifecycleService:
    """Return the service created by the application lifespan."""
    return request.app.state.key_service


def _require_valid_hwid(service: KeyLifecycleService, hwid: str) -> None:
    # Validation happens before the rate limiter so malformed input does not
    # consume the caller's budget.
    if not service.hwid_policy.validate(hwid):
        raise ValidationAppError(code=INVALID_HWID, message="HWID is malformed")


@router.post(
    "/keys",
    response_model=CredentialResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def issue_key(
    body: IssueKeyRequest,
    service: KeyLifecycleService = Depends(get_key_service),
) -> CredentialResponse:
    """Issue a key bound to the owner and HWID.

    Raises:
        400 invalid_hwid / invalid_owner, 409 already_bound / hwid_in_use,
        429 when the owner exhausted its issue budget, 503 if the table
        could not be saved.
    """
    _require_valid_hwid(service, body.hwid)
    enforce_rate_limit(body.owner_id, ISSUE_ACTION)
    credential = await service.issue(body.owner_id, body.hwid)
    return CredentialResponse.from_credential(credential, now_ms=service.now_ms())


@router.get(
    "/keys",
    response_model=KeyListResponse,
    dependencies=[Depends(verify_admin_key)],
    openapi_extra=ADMIN_OPERATION,
)
async def list_keys(
    offset: int = Query(0, ge=0),
    limit: int = Query(25, ge=1, le=200),
    service: KeyLifecycleService = Depends(get_key_service),
) -> KeyListResponse:
    """List keys ordered by expiry, one page at a time (admin only)."""
    credentials = service.list_all()
    now = service.now_ms()
    page = credentials[offset : offset + limit]
    return KeyListResponse(
        total=len(credentials),
        offset=offset,
        limit=limit,
        items=[CredentialResponse.from_credential(c, now_ms=now) for c in page],
    )


@router.get(
    "/keys.lua",
    dependencies=[Depends(verify_admin_key)],
    openapi_extra=ADMIN_OPERATION,
)
async def download_key_table(
    service: KeyLifecycleService = Depends(get_key_service),
) -> Response:
    """Return the persisted key table file (admin only)."""
    return Response(
        content=service.export_table(),
        media_type="application/x-lua",
        headers={"Content-Disposition": "attachment; filename=keys.lua"},
    )


@router.post(
    "/keys/import",
    response_model=ImportResponse,
    dependencies=[Depends(verify_admin_key)],
    openapi_extra=ADMIN_OPERATION,
)
async def import_keys(
    file: UploadFile = File(..., description="keys.lua table to merge"),
    service: KeyLifecycleService = Depends(get_key_service),
) -> ImportResponse:
    """Merge keys from an uploaded table; existing keys are never overwritten."""
    validate_key_table_filename(file.filename)
    data = await read_upload_file_limited(file)
    report = await service.import_merge(data)
    return ImportResponse(added=report.added, skipped=report.skipped, defects=report.defects)


@router.post(
    "/keys/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(verify_admin_key)],
    openapi_extra=ADMIN_OPERATION,
)
async def sweep_keys(service: KeyLifecycleService = Depends(get_key_service)) -> SweepResponse:
    """Remove expired keys now instead of waiting for the background sweep."""
    return SweepResponse(removed=await service.sweep())


@router.post(
    "/keys/verify",
    response_model=VerifyKeyResponse,
    dependencies=[Depends(verify_api_key)],
)
async def verify_key(
    body: VerifyKeyRequest,
    service: KeyLifecycleService = Depends(get_key_service),
) -> VerifyKeyResponse:
    """Check that a key is live and bound to the presenting HWID."""
    enforce_rate_limit(hash_for_log(body.hwid), VERIFY_ACTION)
    credential = service.lookup_key(body.key)
    if credential is None or credential.hwid != body.hwid:
        return VerifyKeyResponse(valid=False)
    return VerifyKeyResponse(valid=True, expires_at=credential.expires_at)


@router.get(
    "/keys/{owner_id}",
    response_model=CredentialResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_key(
    owner_id: str,
    service: KeyLifecycleService = Depends(get_key_service),
) -> CredentialResponse:
    """Return the owner's live key."""
    credential = service.lookup(owner_id)
    if credential is None:
        raise NotFoundAppError(code=NOT_BOUND, message="Owner has no live key")
    return CredentialResponse.from_credential(credential, now_ms=service.now_ms())


@router.put(
    "/keys/{owner_id}/hwid",
    response_model=CredentialResponse,
    dependencies=[Depends(verify_api_key)],
)
async def rebind_hwid(
    owner_id: str,
    body: RebindHwidRequest,
    service: KeyLifecycleService = Depends(get_key_service),
) -> CredentialResponse:
    """Move the owner's key to a new HWID without extending its expiry."""
    _require_valid_hwid(service, body.hwid)
    enforce_rate_limit(owner_id, REBIND_ACTION)
    credential = await service.rebind_hwid(owner_id, body.hwid)
    return CredentialResponse.from_credential(credential, now_ms=service.now_ms())


@router.delete(
    "/keys/{owner_id}",
    response_model=RevokeResponse,
    dependencies=[Depends(verify_admin_key)],
    openapi_extra=ADMIN_OPERATION,
)
async def revoke_key(
    owner_id: str,
    service: KeyLifecycleService = Depends(get_key_service),
) -> RevokeResponse:
    """Revoke the owner's key regardless of expiry (admin only)."""
    if not await service.revoke(owner_id):
        raise NotFoundAppError(code=NOT_BOUND, message=f"No key found for owner {owner_id}")
    return RevokeResponse(revoked=True)
