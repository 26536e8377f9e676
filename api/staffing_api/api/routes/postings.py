from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from staffing_api.core.errors import DomainError, to_http_exception
from staffing_api.core.policy import get_policy
from staffing_api.core.security import get_human_principal
from staffing_api.schemas.applications import ApplicationOut, ApplicationSubmitRequest
from staffing_api.schemas.negotiations import NegotiationOut
from staffing_api.schemas.postings import (
    CascadeDeleteOut,
    PartialFailureOut,
    PostingCreateRequest,
    PostingOut,
    StatusTransitionOut,
    StatusTransitionRequest,
)
from staffing_api.services import applications, cascade, postings, transitions
from staffing_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()

TYPED_DELETE_PATHS = {
    "temporary": "temporary",
    "multi-day-consulting": "multi_day_consulting",
    "permanent": "permanent",
}


@router.post("", response_model=PostingOut, status_code=http_status.HTTP_201_CREATED)
async def create_posting(
    payload: PostingCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> PostingOut:
    try:
        row = await postings.create_posting(repository, policy, principal, draft=payload.model_dump())
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostingOut(**row)


@router.get("/{job_id}", response_model=PostingOut)
async def get_posting(
    job_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> PostingOut:
    try:
        row = await postings.read_posting(repository, policy, principal, job_id=job_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostingOut(**row)


@router.put("/{job_id}/status", response_model=StatusTransitionOut)
async def update_posting_status(
    job_id: str,
    payload: StatusTransitionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> StatusTransitionOut:
    request = transitions.StatusChangeRequest(
        status=payload.status,
        notes=payload.notes,
        accepted_professional_user_sub=payload.accepted_professional_user_sub,
        scheduled_date=payload.scheduled_date,
        completion_notes=payload.completion_notes,
    )
    try:
        result = await transitions.transition_posting_status(
            repository, policy, principal, job_id=job_id, request=request
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return StatusTransitionOut(
        job_id=result.job_id,
        previous_status=result.previous_status,
        new_status=result.new_status,
        updated_at=result.updated_at,
        status_history=result.posting.get("status_history") or [],
    )


@router.delete("/{job_id}", response_model=CascadeDeleteOut)
async def delete_posting(
    job_id: str,
    cascade_applications: bool = Query(default=True, alias="cascade"),
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> CascadeDeleteOut:
    return await _delete(
        repository,
        policy,
        principal,
        job_id=job_id,
        expected_job_type=None,
        cascade_applications=cascade_applications,
    )


@router.delete("/{job_kind}/{job_id}", response_model=CascadeDeleteOut)
async def delete_typed_posting(
    job_kind: str,
    job_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> CascadeDeleteOut:
    expected_job_type = TYPED_DELETE_PATHS.get(job_kind)
    if expected_job_type is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="unknown job kind")
    return await _delete(
        repository,
        policy,
        principal,
        job_id=job_id,
        expected_job_type=expected_job_type,
        cascade_applications=True,
    )


@router.get("/{job_id}/applications", response_model=list[ApplicationOut])
async def list_posting_applications(
    job_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> list[ApplicationOut]:
    try:
        rows = await applications.list_applications_for_posting(repository, policy, principal, job_id=job_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [ApplicationOut(**row) for row in rows]


@router.get("/{job_id}/negotiations", response_model=list[NegotiationOut])
async def list_posting_negotiations(
    job_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> list[NegotiationOut]:
    try:
        rows = await applications.list_negotiations_for_posting(repository, policy, principal, job_id=job_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [NegotiationOut(**row) for row in rows]


@router.post("/{job_id}/applications", response_model=ApplicationOut, status_code=http_status.HTTP_201_CREATED)
async def submit_application(
    job_id: str,
    payload: ApplicationSubmitRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    policy=Depends(get_policy),
) -> ApplicationOut:
    try:
        row = await applications.submit_application(
            repository, policy, principal, job_id=job_id, submission=payload.model_dump()
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ApplicationOut(**row)


async def _delete(
    repository,
    policy,
    principal,
    *,
    job_id: str,
    expected_job_type: str | None,
    cascade_applications: bool,
) -> CascadeDeleteOut:
    try:
        result = await cascade.delete_posting_with_cascade(
            repository,
            policy,
            principal,
            job_id=job_id,
            expected_job_type=expected_job_type,
            cascade=cascade_applications,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return CascadeDeleteOut(
        job_id=result.job_id,
        job_type=result.job_type,
        affected_applications=result.affected_applications,
        application_handling=result.application_handling,
        failed_applications=[
            PartialFailureOut(item_id=failure.item_id, reason=failure.reason) for failure in result.failures
        ],
    )
