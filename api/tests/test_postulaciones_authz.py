from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import postulaciones.core.security as security
from postulaciones.core.auth import Actor
from postulaciones.core.config import get_settings
from postulaciones.main import app
from postulaciones.services.records import (
    ApprovalRecord,
    PostulacionRecord,
    PostulacionView,
    ReviewerRecord,
)
from postulaciones.services.repository import (
    ApprovalResult,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryInternalError,
    RepositoryNotFoundError,
    RepositoryStateError,
    RepositoryValidationError,
    get_repository,
)


def _postulacion(postulacion_id: int, *, created_at: datetime, status: str = "pendiente") -> PostulacionRecord:
    return PostulacionRecord(
        id=postulacion_id,
        full_name=f"Postulante {postulacion_id}",
        email=f"postulante{postulacion_id}@example.cl",
        phone="+56911111111",
        city="Santiago",
        status=status,
        approvals_required=2,
        approvals_count=0,
        created_at=created_at,
        updated_at=created_at,
    )


class FakePostulacionesRepository:
    def __init__(self) -> None:
        now = datetime.now(timezone.utc)
        self.records: dict[int, PostulacionRecord] = {
            1: _postulacion(1, created_at=now - timedelta(days=1)),
            2: _postulacion(2, created_at=now, status="rechazada"),
        }
        self.records[2].rejection_reason = "incomplete references"
        self.approvals: dict[int, list[ApprovalRecord]] = {1: [], 2: []}
        self.reviewers: dict[int, list[ReviewerRecord]] = {1: [], 2: []}
        self.fail_next_approval = False

    def _view(self, postulacion_id: int) -> PostulacionView:
        return PostulacionView(
            postulacion=self.records[postulacion_id],
            approvals=list(self.approvals[postulacion_id]),
            reviewers=list(self.reviewers[postulacion_id]),
        )

    def _record(self, postulacion_id: int) -> PostulacionRecord:
        record = self.records.get(postulacion_id)
        if record is None:
            raise RepositoryNotFoundError("postulacion not found")
        return record

    async def list_postulaciones(
        self,
        *,
        actor: Actor,
        status: str | None,
        search: str | None,
        page: int,
        limit: int,
    ) -> tuple[list[PostulacionView], dict[str, Any]]:
        records = sorted(self.records.values(), key=lambda record: record.created_at, reverse=True)
        if status:
            records = [record for record in records if record.status == status]
        if search:
            records = [record for record in records if search.lower() in record.full_name.lower()]
        total = len(records)
        window = records[(page - 1) * limit : page * limit]
        total_pages = max(1, -(-total // limit))
        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        }
        return [self._view(record.id) for record in window], pagination

    async def get_postulacion(self, *, postulacion_id: int, actor: Actor) -> PostulacionView:
        self._record(postulacion_id)
        return self._view(postulacion_id)

    async def approve_postulacion(self, *, postulacion_id: int, actor: Actor, comment: str | None) -> ApprovalResult:
        record = self._record(postulacion_id)
        if self.fail_next_approval:
            raise RepositoryInternalError("approve postulacion failed")
        if record.is_terminal:
            raise RepositoryStateError(f"postulacion was already {record.status}")
        if any(item.approver_id == actor.id for item in self.approvals[postulacion_id]):
            raise RepositoryConflictError("approver already voted on this postulacion")
        self.approvals[postulacion_id].append(
            ApprovalRecord(
                id=len(self.approvals[postulacion_id]) + 1,
                postulacion_id=postulacion_id,
                approver_id=actor.id,
                approver_role=actor.role,
                comment=comment,
                created_at=datetime.now(timezone.utc),
            )
        )
        record.approvals_count = len(self.approvals[postulacion_id])
        socio_id = None
        password = None
        if record.approvals_count >= record.approvals_required:
            record.status = "aprobada"
            record.socio_id = socio_id = 500
            password = "Abcdefghjkmn"
        else:
            record.status = "en_revision"
        return ApprovalResult(
            view=self._view(postulacion_id),
            socio_id=socio_id,
            generated_password=password,
            reused_existing_account=False,
        )

    async def reject_postulacion(self, *, postulacion_id: int, actor: Actor, reason: str | None) -> PostulacionView:
        if not reason or not reason.strip():
            raise RepositoryValidationError("a reason is required to reject a postulacion")
        record = self._record(postulacion_id)
        if record.is_terminal:
            raise RepositoryStateError(f"postulacion was already {record.status}")
        record.status = "rechazada"
        record.rejection_reason = reason.strip()
        return self._view(postulacion_id)

    async def assign_reviewer(self, *, postulacion_id: int, reviewer_id: int, actor: Actor) -> list[ReviewerRecord]:
        self._record(postulacion_id)
        reviewers = self.reviewers[postulacion_id]
        if any(item.reviewer_id == reviewer_id for item in reviewers):
            raise RepositoryConflictError("reviewer is already assigned to this postulacion")
        if len(reviewers) >= 2:
            raise RepositoryStateError("maximum of 2 reviewers per postulacion")
        now = datetime.now(timezone.utc)
        reviewers.append(
            ReviewerRecord(
                id=len(reviewers) + 1,
                postulacion_id=postulacion_id,
                reviewer_id=reviewer_id,
                reviewer_name=f"Director {reviewer_id}",
                reviewer_email=f"director{reviewer_id}@example.cl",
                reviewer_role="editor",
                feedback=None,
                created_at=now,
                updated_at=now,
            )
        )
        return list(reviewers)

    async def remove_reviewer(self, *, postulacion_id: int, reviewer_id: int, actor: Actor) -> list[ReviewerRecord]:
        self.reviewers[postulacion_id] = [
            item for item in self.reviewers.get(postulacion_id, []) if item.reviewer_id != reviewer_id
        ]
        return list(self.reviewers[postulacion_id])

    async def update_reviewer_feedback(
        self,
        *,
        postulacion_id: int,
        actor: Actor,
        feedback: str | None,
    ) -> list[ReviewerRecord]:
        self._record(postulacion_id)
        for reviewer in self.reviewers[postulacion_id]:
            if reviewer.reviewer_id == actor.id:
                reviewer.feedback = feedback
                return list(self.reviewers[postulacion_id])
        raise RepositoryForbiddenError("only assigned reviewers can leave feedback")


@pytest.fixture
def fake_repo() -> FakePostulacionesRepository:
    return FakePostulacionesRepository()


@pytest.fixture
def authz_client(fake_repo: FakePostulacionesRepository) -> TestClient:
    os.environ["ACA_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["ACA_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("ACA_SUPABASE_URL", None)
    os.environ.pop("ACA_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, *, usuario_id: int | None, role: str) -> None:
    user: dict[str, Any] = {"id": f"supabase-{usuario_id}", "app_metadata": {"role": role}}
    if usuario_id is not None:
        user["app_metadata"]["usuario_id"] = usuario_id

    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


HEADERS = {"Authorization": "Bearer token"}


def test_list_requires_bearer_token(authz_client: TestClient) -> None:
    response = authz_client.get("/postulaciones")
    assert response.status_code == 401


def test_list_denies_member_role(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=99, role="user")

    response = authz_client.get("/postulaciones", headers=HEADERS)
    assert response.status_code == 403


def test_token_without_usuario_link_is_rejected(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=None, role="admin")

    response = authz_client.get("/postulaciones", headers=HEADERS)
    assert response.status_code == 401


def test_user_metadata_cannot_claim_identity_or_role(
    authz_client: TestClient,
    fake_repo: FakePostulacionesRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for usuario_id in (10, 11):
        user = {
            "id": "self-signup",
            "app_metadata": {"provider": "email"},
            "user_metadata": {"usuario_id": usuario_id, "role": "admin"},
        }

        async def _fake_fetch(user: dict[str, Any] = user, **_: Any) -> dict[str, Any]:
            return user

        monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
        response = authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS)
        assert response.status_code == 401

    assert fake_repo.approvals[1] == []
    assert fake_repo.records[1].status == "pendiente"


def test_user_metadata_role_does_not_elevate_linked_member(
    authz_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {
            "id": "member",
            "app_metadata": {"usuario_id": 99},
            "user_metadata": {"role": "admin"},
        }

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)

    response = authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS)
    assert response.status_code == 403


def test_list_serializes_items_and_pagination(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")

    response = authz_client.get("/postulaciones", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body["items"]] == [2, 1]
    assert body["items"][1]["pending_approvals"] == 2
    assert body["items"][1]["approvals"] == []
    assert body["items"][1]["reviewers"] == []
    assert body["pagination"] == {
        "page": 1,
        "limit": 20,
        "total": 2,
        "total_pages": 1,
        "has_next": False,
        "has_prev": False,
    }


def test_list_rejects_unknown_status(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")

    response = authz_client.get("/postulaciones", params={"status": "archivada"}, headers=HEADERS)
    assert response.status_code == 422


def test_get_unknown_postulacion_returns_404(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="organizer")

    response = authz_client.get("/postulaciones/404", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "not_found"


def test_approve_response_carries_view_and_credentials(
    authz_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")
    first = authz_client.post("/postulaciones/1/approve", json={"comment": "ok"}, headers=HEADERS)
    assert first.status_code == 200
    first_body = first.json()
    assert first_body["postulacion"]["status"] == "en_revision"
    assert first_body["postulacion"]["approvals_count"] == 1
    assert first_body["postulacion"]["pending_approvals"] == 1
    assert first_body["postulacion"]["socio_id"] is None
    assert first_body["generated_password"] is None

    _mock_supabase_user(monkeypatch, usuario_id=11, role="organizer")
    second = authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS)
    assert second.status_code == 200
    second_body = second.json()
    assert second_body["postulacion"]["status"] == "aprobada"
    assert second_body["postulacion"]["approvals_count"] == 2
    assert second_body["postulacion"]["pending_approvals"] == 0
    assert second_body["socio_id"] == 500
    assert second_body["generated_password"]


def test_repeat_vote_maps_to_conflict(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")
    assert authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS).status_code == 200

    response = authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "conflict"


def test_approving_rejected_postulacion_is_a_state_error(
    authz_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")

    response = authz_client.post("/postulaciones/2/approve", json={}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_state"


def test_internal_errors_are_sanitized(
    authz_client: TestClient,
    fake_repo: FakePostulacionesRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")
    fake_repo.fail_next_approval = True

    response = authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS)
    assert response.status_code == 500
    assert response.json()["detail"] == {"code": "internal_error", "message": "internal error"}


def test_reject_requires_reason(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="editor")

    response = authz_client.post("/postulaciones/1/reject", json={"reason": "   "}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "validation_error"


def test_reject_without_reason_field_is_a_validation_error(
    authz_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="editor")

    response = authz_client.post("/postulaciones/1/reject", json={}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "validation_error"


def test_long_comment_and_reason_reach_the_repository(
    authz_client: TestClient,
    fake_repo: FakePostulacionesRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")

    approved = authz_client.post("/postulaciones/1/approve", json={"comment": "c" * 2500}, headers=HEADERS)
    assert approved.status_code == 200
    assert fake_repo.approvals[1][0].comment == "c" * 2500

    rejected = authz_client.post("/postulaciones/1/reject", json={"reason": "r" * 2500}, headers=HEADERS)
    assert rejected.status_code == 200


def test_reject_response_then_state_error_maps_to_400(
    authz_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")

    rejected = authz_client.post(
        "/postulaciones/1/reject",
        json={"reason": "incomplete references"},
        headers=HEADERS,
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rechazada"
    assert rejected.json()["rejection_reason"] == "incomplete references"

    approved = authz_client.post("/postulaciones/1/approve", json={}, headers=HEADERS)
    assert approved.status_code == 400


def test_reviewer_errors_map_to_conflict_and_bad_request(
    authz_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")

    assert authz_client.post("/postulaciones/1/reviewers", json={"reviewer_id": 20}, headers=HEADERS).status_code == 201
    duplicate = authz_client.post("/postulaciones/1/reviewers", json={"reviewer_id": 20}, headers=HEADERS)
    assert duplicate.status_code == 409

    second = authz_client.post("/postulaciones/1/reviewers", json={"reviewer_id": 21}, headers=HEADERS)
    assert second.status_code == 201
    assert [item["reviewer_id"] for item in second.json()["reviewers"]] == [20, 21]

    third = authz_client.post("/postulaciones/1/reviewers", json={"reviewer_id": 22}, headers=HEADERS)
    assert third.status_code == 400
    assert "maximum of 2 reviewers" in third.json()["detail"]["message"]


def test_remove_reviewer_returns_remaining_list(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")
    authz_client.post("/postulaciones/1/reviewers", json={"reviewer_id": 20}, headers=HEADERS)

    for _ in range(2):
        response = authz_client.delete("/postulaciones/1/reviewers/20", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"postulacion_id": 1, "reviewers": []}


def test_feedback_forbidden_maps_to_403(authz_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, usuario_id=10, role="admin")
    authz_client.post("/postulaciones/1/reviewers", json={"reviewer_id": 20}, headers=HEADERS)

    _mock_supabase_user(monkeypatch, usuario_id=99, role="editor")
    denied = authz_client.put("/postulaciones/1/feedback", json={"feedback": "looks good"}, headers=HEADERS)
    assert denied.status_code == 403

    _mock_supabase_user(monkeypatch, usuario_id=20, role="editor")
    allowed = authz_client.put("/postulaciones/1/feedback", json={"feedback": "looks good"}, headers=HEADERS)
    assert allowed.status_code == 200
    assert allowed.json()["reviewers"][0]["feedback"] == "looks good"
