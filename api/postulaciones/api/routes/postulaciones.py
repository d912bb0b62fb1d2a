import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from postulaciones.core.auth import Actor
from postulaciones.core.security import get_director
from postulaciones.schemas.postulaciones import (
    ApprovalRequest,
    ApprovalResultOut,
    PaginationOut,
    PostulacionListOut,
    PostulacionOut,
    PostulacionStatus,
    RejectionRequest,
    ReviewerAssignRequest,
    ReviewerFeedbackRequest,
    ReviewerListOut,
    ReviewerOut,
)
from postulaciones.services.records import reviewer_to_dict
from postulaciones.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryInternalError,
    RepositoryNotFoundError,
    RepositoryStateError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[RepositoryError], int], ...] = (
    (RepositoryValidationError, status.HTTP_400_BAD_REQUEST),
    (RepositoryStateError, status.HTTP_400_BAD_REQUEST),
    (RepositoryForbiddenError, status.HTTP_403_FORBIDDEN),
    (RepositoryNotFoundError, status.HTTP_404_NOT_FOUND),
    (RepositoryConflictError, status.HTTP_409_CONFLICT),
    (RepositoryUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryInternalError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": exc.code, "message": "internal error"},
        )
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
    logger.error("unmapped repository error: %r", exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "internal_error", "message": "internal error"},
    )


@router.get("", response_model=PostulacionListOut)
async def list_postulaciones(
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
    postulacion_status: PostulacionStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=200),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> PostulacionListOut:
    try:
        views, pagination = await repository.list_postulaciones(
            actor=actor,
            status=postulacion_status,
            search=search,
            page=page,
            limit=limit,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return PostulacionListOut(
        items=[PostulacionOut(**view.to_dict()) for view in views],
        pagination=PaginationOut(**pagination),
    )


@router.get("/{postulacion_id}", response_model=PostulacionOut)
async def get_postulacion(
    postulacion_id: int,
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
) -> PostulacionOut:
    try:
        view = await repository.get_postulacion(postulacion_id=postulacion_id, actor=actor)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return PostulacionOut(**view.to_dict())


@router.post("/{postulacion_id}/approve", response_model=ApprovalResultOut)
async def approve_postulacion(
    postulacion_id: int,
    payload: ApprovalRequest,
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
) -> ApprovalResultOut:
    try:
        result = await repository.approve_postulacion(
            postulacion_id=postulacion_id,
            actor=actor,
            comment=payload.comment,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return ApprovalResultOut(
        postulacion=PostulacionOut(**result.view.to_dict()),
        socio_id=result.socio_id,
        generated_password=result.generated_password,
        reused_existing_account=result.reused_existing_account,
    )


@router.post("/{postulacion_id}/reject", response_model=PostulacionOut)
async def reject_postulacion(
    postulacion_id: int,
    payload: RejectionRequest,
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
) -> PostulacionOut:
    try:
        view = await repository.reject_postulacion(
            postulacion_id=postulacion_id,
            actor=actor,
            reason=payload.reason,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return PostulacionOut(**view.to_dict())


@router.post("/{postulacion_id}/reviewers", response_model=ReviewerListOut, status_code=status.HTTP_201_CREATED)
async def assign_reviewer(
    postulacion_id: int,
    payload: ReviewerAssignRequest,
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
) -> ReviewerListOut:
    try:
        reviewers = await repository.assign_reviewer(
            postulacion_id=postulacion_id,
            reviewer_id=payload.reviewer_id,
            actor=actor,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return _reviewer_list(postulacion_id, reviewers)


@router.delete("/{postulacion_id}/reviewers/{reviewer_id}", response_model=ReviewerListOut)
async def remove_reviewer(
    postulacion_id: int,
    reviewer_id: int,
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
) -> ReviewerListOut:
    try:
        reviewers = await repository.remove_reviewer(
            postulacion_id=postulacion_id,
            reviewer_id=reviewer_id,
            actor=actor,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return _reviewer_list(postulacion_id, reviewers)


@router.put("/{postulacion_id}/feedback", response_model=ReviewerListOut)
async def update_feedback(
    postulacion_id: int,
    payload: ReviewerFeedbackRequest,
    actor: Actor = Depends(get_director),
    repository=Depends(get_repository),
) -> ReviewerListOut:
    try:
        reviewers = await repository.update_reviewer_feedback(
            postulacion_id=postulacion_id,
            actor=actor,
            feedback=payload.feedback,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return _reviewer_list(postulacion_id, reviewers)


def _reviewer_list(postulacion_id: int, reviewers: list) -> ReviewerListOut:
    return ReviewerListOut(
        postulacion_id=postulacion_id,
        reviewers=[ReviewerOut(**reviewer_to_dict(reviewer)) for reviewer in reviewers],
    )
