from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PostulacionStatus = Literal["pendiente", "en_revision", "aprobada", "rechazada"]


class ApprovalOut(BaseModel):
    id: int
    approver_id: int
    approver_role: str
    approver_name: str | None = None
    comment: str | None = None
    created_at: datetime | None = None


class ReviewerOut(BaseModel):
    id: int
    reviewer_id: int
    reviewer_name: str
    reviewer_email: str | None = None
    reviewer_role: str | None = None
    feedback: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PostulacionOut(BaseModel):
    id: int
    full_name: str
    email: str
    phone: str
    rut: str | None = None
    birthdate: str | None = None
    region: str | None = None
    city: str | None = None
    address: str | None = None
    occupation: str | None = None
    experience_level: str = ""
    specialties: str | None = None
    motivation: str = ""
    contribution: str = ""
    availability: list[str] = Field(default_factory=list)
    has_competition_experience: bool = False
    competition_details: str | None = None
    sponsor_1: str | None = None
    sponsor_2: str | None = None
    instagram: str | None = None
    other_networks: str | None = None
    references: str | None = None
    photo_url: str | None = None
    previous_aca_member: bool = False
    previous_association: str | None = None
    still_in_association: bool = False
    exit_reason: str | None = None
    status: PostulacionStatus
    approvals_required: int
    approvals_count: int
    pending_approvals: int
    rejection_reason: str | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    socio_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    approvals: list[ApprovalOut] = Field(default_factory=list)
    reviewers: list[ReviewerOut] = Field(default_factory=list)


class PaginationOut(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PostulacionListOut(BaseModel):
    items: list[PostulacionOut] = Field(default_factory=list)
    pagination: PaginationOut


class ApprovalRequest(BaseModel):
    comment: str | None = None


class ApprovalResultOut(BaseModel):
    postulacion: PostulacionOut
    socio_id: int | None = None
    generated_password: str | None = None
    reused_existing_account: bool = False


class RejectionRequest(BaseModel):
    reason: str | None = None


class ReviewerAssignRequest(BaseModel):
    reviewer_id: int = Field(ge=1)


class ReviewerFeedbackRequest(BaseModel):
    feedback: str | None = None


class ReviewerListOut(BaseModel):
    postulacion_id: int
    reviewers: list[ReviewerOut] = Field(default_factory=list)
