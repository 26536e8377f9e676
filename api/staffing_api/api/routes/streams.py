import logging

from fastapi import APIRouter, Depends, HTTPException, status as http_status

from staffing_api.core.config import Settings, get_settings
from staffing_api.core.errors import DomainError, to_http_exception
from staffing_api.core.policy import Action, get_policy
from staffing_api.core.security import get_machine_principal
from staffing_api.schemas.streams import AckChangesOut, AckChangesRequest, ChangeRecordOut, ClaimChangesRequest
from staffing_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/applications/claim", response_model=list[ChangeRecordOut])
async def claim_application_changes(
    payload: ClaimChangesRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
    settings: Settings = Depends(get_settings),
) -> list[ChangeRecordOut]:
    try:
        policy.require(principal, Action.CHANGE_FEED_CONSUME)
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    limit = min(payload.limit, settings.change_feed_max_batch_size)
    lease_seconds = payload.lease_seconds or settings.change_feed_lease_seconds
    try:
        rows = await repository.claim_application_changes(limit=limit, lease_seconds=lease_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if rows:
        logger.info("change feed batch claimed module_id=%s size=%s", principal.subject, len(rows))
    return [ChangeRecordOut(**row) for row in rows]


@router.post("/applications/ack", response_model=AckChangesOut)
async def ack_application_changes(
    payload: AckChangesRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> AckChangesOut:
    try:
        policy.require(principal, Action.CHANGE_FEED_CONSUME)
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    try:
        acknowledged = await repository.ack_application_changes(payload.event_ids)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail="event ids must be numeric") from exc
    return AckChangesOut(acknowledged=acknowledged)
