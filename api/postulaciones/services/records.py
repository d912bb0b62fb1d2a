"""Typed records for postulaciones rows and the canonical row mappers.

Every null-coalescing and default rule for persisted rows lives here so the
repository never reads raw ``asyncpg.Record`` fields outside this module.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

logger = logging.getLogger(__name__)

POSTULACION_STATUSES = ("pendiente", "en_revision", "aprobada", "rechazada")
TERMINAL_STATUSES = frozenset({"aprobada", "rechazada"})
DEFAULT_APPROVALS_REQUIRED = 2
AVAILABILITY_OPTIONS = (
    "eventos_publicos",
    "talleres_formativos",
    "competencias",
    "voluntariado_social",
    "mentoria_miembros",
)


@dataclass(slots=True)
class PostulacionRecord:
    id: int
    full_name: str
    email: str
    phone: str
    status: str
    approvals_required: int
    approvals_count: int
    created_at: datetime | None
    updated_at: datetime | None
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
    availability: list[str] = field(default_factory=list)
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
    rejection_reason: str | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    socio_id: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class ApprovalRecord:
    id: int
    postulacion_id: int
    approver_id: int
    approver_role: str
    comment: str | None
    created_at: datetime | None
    approver_name: str | None = None


@dataclass(slots=True)
class ReviewerRecord:
    id: int
    postulacion_id: int
    reviewer_id: int
    reviewer_name: str
    reviewer_email: str | None
    reviewer_role: str | None
    feedback: str | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(slots=True)
class PostulacionView:
    """A postulacion together with its votes and reviewers."""

    postulacion: PostulacionRecord
    approvals: list[ApprovalRecord] = field(default_factory=list)
    reviewers: list[ReviewerRecord] = field(default_factory=list)

    @property
    def approvals_count(self) -> int:
        return len(self.approvals)

    @property
    def pending_approvals(self) -> int:
        return pending_approvals(self.postulacion.approvals_required, self.approvals_count)

    def to_dict(self) -> dict[str, Any]:
        payload = postulacion_to_dict(self.postulacion)
        payload["approvals"] = [approval_to_dict(item) for item in self.approvals]
        payload["approvals_count"] = self.approvals_count
        payload["pending_approvals"] = self.pending_approvals
        payload["reviewers"] = [reviewer_to_dict(item) for item in self.reviewers]
        return payload


def pending_approvals(approvals_required: int, approvals_count: int) -> int:
    return max(0, approvals_required - approvals_count)


def map_postulacion_row(row: Mapping[str, Any]) -> PostulacionRecord:
    return PostulacionRecord(
        id=int(row["id"]),
        full_name=_text(row.get("full_name")) or "",
        email=_text(row.get("email")) or "",
        phone=_text(row.get("phone")) or "",
        rut=_text(row.get("rut")),
        birthdate=_date_text(row.get("birthdate")),
        region=_text(row.get("region")),
        city=_text(row.get("city")),
        address=_text(row.get("address")),
        occupation=_text(row.get("occupation")),
        experience_level=_text(row.get("experience_level")) or "",
        specialties=_text(row.get("specialties")),
        motivation=_text(row.get("motivation")) or "",
        contribution=_text(row.get("contribution")) or "",
        availability=_availability(row.get("availability")),
        has_competition_experience=_flag(row.get("has_competition_experience")),
        competition_details=_text(row.get("competition_details")),
        sponsor_1=_text(row.get("sponsor_1")),
        sponsor_2=_text(row.get("sponsor_2")),
        instagram=_text(row.get("instagram")),
        other_networks=_text(row.get("other_networks")),
        # Rows written before the column rename still carry "references".
        references=_text(row.get("references_info")) or _text(row.get("references")),
        photo_url=_text(row.get("photo_url")),
        previous_aca_member=_flag(row.get("previous_aca_member")),
        previous_association=_text(row.get("previous_association")),
        still_in_association=_flag(row.get("still_in_association")),
        exit_reason=_text(row.get("exit_reason")),
        status=_status(row.get("status")),
        approvals_required=_positive_int(row.get("approvals_required"), DEFAULT_APPROVALS_REQUIRED),
        approvals_count=max(0, _int(row.get("approvals_count"), 0)),
        rejection_reason=_text(row.get("rejection_reason")),
        approved_at=row.get("approved_at"),
        rejected_at=row.get("rejected_at"),
        socio_id=_optional_int(row.get("socio_id")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def map_approval_row(row: Mapping[str, Any]) -> ApprovalRecord:
    return ApprovalRecord(
        id=int(row["id"]),
        postulacion_id=int(row["postulacion_id"]),
        approver_id=int(row["approver_id"]),
        approver_role=_text(row.get("approver_role")) or "",
        comment=_text(row.get("comment")),
        created_at=row.get("created_at"),
        approver_name=display_name(row.get("nombre"), row.get("apellido"), row.get("email")),
    )


def map_reviewer_row(row: Mapping[str, Any]) -> ReviewerRecord:
    email = _text(row.get("email"))
    return ReviewerRecord(
        id=int(row["id"]),
        postulacion_id=int(row["postulacion_id"]),
        reviewer_id=int(row["reviewer_id"]),
        reviewer_name=display_name(row.get("nombre"), row.get("apellido"), email) or "",
        reviewer_email=email,
        reviewer_role=_text(row.get("role")),
        feedback=_text(row.get("feedback")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def postulacion_to_dict(record: PostulacionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "full_name": record.full_name,
        "email": record.email,
        "phone": record.phone,
        "rut": record.rut,
        "birthdate": record.birthdate,
        "region": record.region,
        "city": record.city,
        "address": record.address,
        "occupation": record.occupation,
        "experience_level": record.experience_level,
        "specialties": record.specialties,
        "motivation": record.motivation,
        "contribution": record.contribution,
        "availability": list(record.availability),
        "has_competition_experience": record.has_competition_experience,
        "competition_details": record.competition_details,
        "sponsor_1": record.sponsor_1,
        "sponsor_2": record.sponsor_2,
        "instagram": record.instagram,
        "other_networks": record.other_networks,
        "references": record.references,
        "photo_url": record.photo_url,
        "previous_aca_member": record.previous_aca_member,
        "previous_association": record.previous_association,
        "still_in_association": record.still_in_association,
        "exit_reason": record.exit_reason,
        "status": record.status,
        "approvals_required": record.approvals_required,
        "rejection_reason": record.rejection_reason,
        "approved_at": record.approved_at,
        "rejected_at": record.rejected_at,
        "socio_id": record.socio_id,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def approval_to_dict(record: ApprovalRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "approver_id": record.approver_id,
        "approver_role": record.approver_role,
        "approver_name": record.approver_name,
        "comment": record.comment,
        "created_at": record.created_at,
    }


def reviewer_to_dict(record: ReviewerRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "reviewer_id": record.reviewer_id,
        "reviewer_name": record.reviewer_name,
        "reviewer_email": record.reviewer_email,
        "reviewer_role": record.reviewer_role,
        "feedback": record.feedback,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def display_name(nombre: Any, apellido: Any, email: Any) -> str | None:
    full_name = " ".join(part for part in (_text(nombre), _text(apellido)) if part)
    return full_name or _text(email)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _date_text(value: Any) -> str | None:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return _text(value)


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "si", "on"}
    return False


def _int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _positive_int(value: Any, default: int) -> int:
    parsed = _int(value, default)
    return parsed if parsed > 0 else default


def _status(value: Any) -> str:
    if isinstance(value, str) and value in POSTULACION_STATUSES:
        return value
    return "pendiente"


def _availability(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("ignoring malformed availability payload: %r", value[:80])
            return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item in AVAILABILITY_OPTIONS]
