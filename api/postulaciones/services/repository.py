from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc
from opentelemetry import trace

from postulaciones.core.auth import Actor, is_director_role
from postulaciones.core.config import get_settings
from postulaciones.services.email import ReviewerNotifier, get_reviewer_notifier
from postulaciones.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryInternalError,
    RepositoryNotFoundError,
    RepositoryStateError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from postulaciones.services.migrations import apply_migrations
from postulaciones.services.provisioning import AccountProvisioner
from postulaciones.services.records import (
    POSTULACION_STATUSES,
    ApprovalRecord,
    PostulacionRecord,
    PostulacionView,
    ReviewerRecord,
    display_name,
    map_approval_row,
    map_postulacion_row,
    map_reviewer_row,
)

__all__ = [
    "ApprovalResult",
    "PostulacionesRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryForbiddenError",
    "RepositoryInternalError",
    "RepositoryNotFoundError",
    "RepositoryStateError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
    "require_director",
]

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_REVIEWERS_PER_POSTULACION = 2
MAX_COMMENT_LENGTH = 500
MAX_REJECTION_REASON_LENGTH = 600
MAX_FEEDBACK_LENGTH = 5000
MAX_PAGE_LIMIT = 100


def require_director(actor: Actor) -> None:
    if not actor.is_director:
        raise RepositoryForbiddenError(f"role {actor.role!r} cannot manage postulaciones")


@dataclass(slots=True)
class ApprovalResult:
    view: PostulacionView
    socio_id: int | None
    generated_password: str | None
    reused_existing_account: bool


class PostulacionesRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        provisioner: AccountProvisioner,
        notifier: ReviewerNotifier | None = None,
        auto_migrate: bool = True,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.provisioner = provisioner
        self.notifier = notifier
        self.auto_migrate = auto_migrate
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_schema_version(self) -> int | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchval("select max(version) from schema_migrations")
        except pg_exc.UndefinedTableError:
            return None
        except pg_exc.PostgresError as exc:
            raise self._internal_error("get_schema_version", exc) from exc

    async def get_postulacion(self, *, postulacion_id: int, actor: Actor) -> PostulacionView:
        require_director(actor)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow("select * from postulaciones where id = $1", postulacion_id)
                if not row:
                    raise RepositoryNotFoundError("postulacion not found")
                return await self._load_view(conn, map_postulacion_row(row))
        except pg_exc.PostgresError as exc:
            raise self._internal_error("get_postulacion", exc, postulacion_id=postulacion_id) from exc

    async def list_postulaciones(
        self,
        *,
        actor: Actor,
        status: str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[PostulacionView], dict[str, Any]]:
        require_director(actor)
        normalized_status = self._coerce_text(status)
        if normalized_status and normalized_status not in POSTULACION_STATUSES:
            raise RepositoryValidationError(f"status must be one of: {', '.join(POSTULACION_STATUSES)}")
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_LIMIT)

        conditions: list[str] = []
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if normalized_status:
            conditions.append(f"p.status = {bind(normalized_status)}")

        normalized_search = self._coerce_text(search)
        if normalized_search:
            token = bind(normalized_search.lower())
            searchable = (
                "p.full_name",
                "p.email",
                "coalesce(p.city, '')",
                "coalesce(p.region, '')",
                "coalesce(p.phone, '')",
                "coalesce(p.rut, '')",
            )
            conditions.append("(" + " or ".join(f"strpos(lower({column}), {token}) > 0" for column in searchable) + ")")

        where_sql = " and ".join(conditions) if conditions else "true"
        filter_params = list(params)
        limit_token = bind(limit)
        offset_token = bind((page - 1) * limit)

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                total = await conn.fetchval(
                    f"select count(*) from postulaciones p where {where_sql}",
                    *filter_params,
                )
                rows = await conn.fetch(
                    f"""
                    select p.*
                    from postulaciones p
                    where {where_sql}
                    order by p.created_at desc, p.id desc
                    limit {limit_token}
                    offset {offset_token}
                    """,
                    *params,
                )
                records = [map_postulacion_row(row) for row in rows]
                views = await self._load_views(conn, records)
        except pg_exc.PostgresError as exc:
            raise self._internal_error("list_postulaciones", exc) from exc

        return views, self._build_pagination(page=page, limit=limit, total=int(total or 0))

    async def approve_postulacion(
        self,
        *,
        postulacion_id: int,
        actor: Actor,
        comment: str | None = None,
    ) -> ApprovalResult:
        require_director(actor)
        normalized_comment = self._truncate(self._coerce_text(comment), MAX_COMMENT_LENGTH)
        pool = await self._get_pool()

        with tracer.start_as_current_span("postulaciones.approve") as span:
            span.set_attribute("postulacion.id", postulacion_id)
            span.set_attribute("approver.id", actor.id)
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        record = await self._lock_postulacion(conn, postulacion_id)
                        self._ensure_undecided(record)

                        try:
                            await conn.execute(
                                """
                                insert into postulacion_aprobaciones (
                                  postulacion_id,
                                  approver_id,
                                  approver_role,
                                  comment
                                )
                                values ($1, $2, $3, $4)
                                """,
                                postulacion_id,
                                actor.id,
                                actor.role,
                                normalized_comment,
                            )
                        except pg_exc.UniqueViolationError as exc:
                            raise RepositoryConflictError("approver already voted on this postulacion") from exc
                        except pg_exc.ForeignKeyViolationError as exc:
                            raise RepositoryNotFoundError("approver account not found") from exc

                        approvals_count = int(
                            await conn.fetchval(
                                """
                                select count(distinct approver_id)
                                from postulacion_aprobaciones
                                where postulacion_id = $1
                                """,
                                postulacion_id,
                            )
                        )
                        new_status = self._resolve_status_after_vote(
                            approvals_count=approvals_count,
                            approvals_required=record.approvals_required,
                        )

                        socio_id: int | None = None
                        generated_password: str | None = None
                        reused_existing = False
                        if new_status == "aprobada":
                            provisioned = await self.provisioner.provision_or_reactivate(conn, record)
                            socio_id = provisioned.account_id
                            generated_password = provisioned.generated_password
                            reused_existing = provisioned.reused_existing

                        row = await conn.fetchrow(
                            """
                            update postulaciones
                            set
                              status = $2,
                              approvals_count = $3,
                              socio_id = $4,
                              approved_at = case when $5 then now() else approved_at end
                            where id = $1
                            returning *
                            """,
                            postulacion_id,
                            new_status,
                            approvals_count,
                            socio_id,
                            new_status == "aprobada",
                        )
                        view = await self._load_view(conn, map_postulacion_row(row))
            except RepositoryInternalError:
                logger.exception(
                    "approval aborted for postulacion id=%s approver id=%s",
                    postulacion_id,
                    actor.id,
                )
                raise
            except pg_exc.PostgresError as exc:
                raise self._internal_error("approve_postulacion", exc, postulacion_id=postulacion_id) from exc

            span.set_attribute("postulacion.status", view.postulacion.status)

        logger.info(
            "postulacion approval recorded id=%s approver=%s status=%s approvals=%s/%s",
            postulacion_id,
            actor.id,
            view.postulacion.status,
            view.approvals_count,
            view.postulacion.approvals_required,
        )
        return ApprovalResult(
            view=view,
            socio_id=socio_id,
            generated_password=generated_password,
            reused_existing_account=reused_existing,
        )

    async def reject_postulacion(self, *, postulacion_id: int, actor: Actor, reason: str | None) -> PostulacionView:
        require_director(actor)
        normalized_reason = self._truncate(self._coerce_text(reason), MAX_REJECTION_REASON_LENGTH)
        if not normalized_reason:
            raise RepositoryValidationError("a reason is required to reject a postulacion")
        pool = await self._get_pool()

        with tracer.start_as_current_span("postulaciones.reject") as span:
            span.set_attribute("postulacion.id", postulacion_id)
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        record = await self._lock_postulacion(conn, postulacion_id)
                        self._ensure_undecided(record)
                        # approvals_count is deliberately left as-is; prior votes stay for audit.
                        row = await conn.fetchrow(
                            """
                            update postulaciones
                            set
                              status = 'rechazada',
                              rejection_reason = $2,
                              rejected_at = now()
                            where id = $1
                            returning *
                            """,
                            postulacion_id,
                            normalized_reason,
                        )
                        view = await self._load_view(conn, map_postulacion_row(row))
            except pg_exc.PostgresError as exc:
                raise self._internal_error("reject_postulacion", exc, postulacion_id=postulacion_id) from exc

        logger.info("postulacion rejected id=%s by=%s", postulacion_id, actor.id)
        return view

    async def assign_reviewer(self, *, postulacion_id: int, reviewer_id: int, actor: Actor) -> list[ReviewerRecord]:
        require_director(actor)
        pool = await self._get_pool()

        with tracer.start_as_current_span("postulaciones.assign_reviewer") as span:
            span.set_attribute("postulacion.id", postulacion_id)
            span.set_attribute("reviewer.id", reviewer_id)
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        record = await self._lock_postulacion(conn, postulacion_id)
                        if record.is_terminal:
                            raise RepositoryStateError(
                                f"postulacion is already {record.status}; reviewers can no longer be assigned"
                            )

                        reviewer = await conn.fetchrow(
                            "select id, role, nombre, apellido, email from usuarios where id = $1",
                            reviewer_id,
                        )
                        if not reviewer:
                            raise RepositoryNotFoundError("reviewer account not found")
                        if not is_director_role(reviewer["role"]):
                            raise RepositoryValidationError("reviewer must hold a director role")

                        already_assigned = await conn.fetchval(
                            """
                            select exists (
                              select 1
                              from postulacion_reviewers
                              where postulacion_id = $1 and reviewer_id = $2
                            )
                            """,
                            postulacion_id,
                            reviewer_id,
                        )
                        if already_assigned:
                            raise RepositoryConflictError("reviewer is already assigned to this postulacion")

                        reviewer_count = int(
                            await conn.fetchval(
                                "select count(*) from postulacion_reviewers where postulacion_id = $1",
                                postulacion_id,
                            )
                        )
                        if reviewer_count >= MAX_REVIEWERS_PER_POSTULACION:
                            raise RepositoryStateError(
                                f"maximum of {MAX_REVIEWERS_PER_POSTULACION} reviewers per postulacion"
                            )

                        try:
                            await conn.execute(
                                """
                                insert into postulacion_reviewers (postulacion_id, reviewer_id, assigned_by)
                                values ($1, $2, $3)
                                """,
                                postulacion_id,
                                reviewer_id,
                                actor.id,
                            )
                        except pg_exc.UniqueViolationError as exc:
                            raise RepositoryConflictError("reviewer is already assigned to this postulacion") from exc
                        except pg_exc.ForeignKeyViolationError as exc:
                            raise RepositoryNotFoundError("assigning account not found") from exc

                        assigner = await conn.fetchrow(
                            "select nombre, apellido, email from usuarios where id = $1",
                            actor.id,
                        )
                        reviewers = (await self._fetch_reviewers(conn, [postulacion_id])).get(postulacion_id, [])
            except pg_exc.PostgresError as exc:
                raise self._internal_error("assign_reviewer", exc, postulacion_id=postulacion_id) from exc

        logger.info("reviewer assigned postulacion id=%s reviewer=%s by=%s", postulacion_id, reviewer_id, actor.id)
        self._notify_reviewer(record=record, reviewer=reviewer, assigner=assigner, actor=actor)
        return reviewers

    async def remove_reviewer(self, *, postulacion_id: int, reviewer_id: int, actor: Actor) -> list[ReviewerRecord]:
        require_director(actor)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                result = await conn.execute(
                    "delete from postulacion_reviewers where postulacion_id = $1 and reviewer_id = $2",
                    postulacion_id,
                    reviewer_id,
                )
                reviewers = (await self._fetch_reviewers(conn, [postulacion_id])).get(postulacion_id, [])
        except pg_exc.PostgresError as exc:
            raise self._internal_error("remove_reviewer", exc, postulacion_id=postulacion_id) from exc

        logger.info(
            "reviewer removal postulacion id=%s reviewer=%s by=%s result=%s",
            postulacion_id,
            reviewer_id,
            actor.id,
            result,
        )
        return reviewers

    async def update_reviewer_feedback(
        self,
        *,
        postulacion_id: int,
        actor: Actor,
        feedback: str | None,
    ) -> list[ReviewerRecord]:
        normalized_feedback = self._coerce_text(feedback)
        if normalized_feedback and len(normalized_feedback) > MAX_FEEDBACK_LENGTH:
            raise RepositoryValidationError(f"feedback cannot exceed {MAX_FEEDBACK_LENGTH} characters")
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    exists = await conn.fetchval(
                        "select exists (select 1 from postulaciones where id = $1)",
                        postulacion_id,
                    )
                    if not exists:
                        raise RepositoryNotFoundError("postulacion not found")

                    updated = await conn.fetchval(
                        """
                        update postulacion_reviewers
                        set feedback = $3, updated_at = now()
                        where postulacion_id = $1 and reviewer_id = $2
                        returning id
                        """,
                        postulacion_id,
                        actor.id,
                        normalized_feedback,
                    )
                    if updated is None:
                        raise RepositoryForbiddenError("only assigned reviewers can leave feedback")

                    reviewers = (await self._fetch_reviewers(conn, [postulacion_id])).get(postulacion_id, [])
        except pg_exc.PostgresError as exc:
            raise self._internal_error("update_reviewer_feedback", exc, postulacion_id=postulacion_id) from exc

        logger.info("reviewer feedback updated postulacion id=%s reviewer=%s", postulacion_id, actor.id)
        return reviewers

    async def _lock_postulacion(self, conn: asyncpg.Connection, postulacion_id: int) -> PostulacionRecord:
        row = await conn.fetchrow("select * from postulaciones where id = $1 for update", postulacion_id)
        if not row:
            raise RepositoryNotFoundError("postulacion not found")
        return map_postulacion_row(row)

    async def _load_view(self, conn: asyncpg.Connection, record: PostulacionRecord) -> PostulacionView:
        views = await self._load_views(conn, [record])
        return views[0]

    async def _load_views(self, conn: asyncpg.Connection, records: list[PostulacionRecord]) -> list[PostulacionView]:
        if not records:
            return []
        ids = [record.id for record in records]
        approvals = await self._fetch_approvals(conn, ids)
        reviewers = await self._fetch_reviewers(conn, ids)
        return [
            PostulacionView(
                postulacion=record,
                approvals=approvals.get(record.id, []),
                reviewers=reviewers.get(record.id, []),
            )
            for record in records
        ]

    @staticmethod
    async def _fetch_approvals(conn: asyncpg.Connection, postulacion_ids: list[int]) -> dict[int, list[ApprovalRecord]]:
        rows = await conn.fetch(
            """
            select
              a.id,
              a.postulacion_id,
              a.approver_id,
              a.approver_role,
              a.comment,
              a.created_at,
              u.nombre,
              u.apellido,
              u.email
            from postulacion_aprobaciones a
            left join usuarios u on u.id = a.approver_id
            where a.postulacion_id = any($1::bigint[])
            order by a.postulacion_id, a.created_at asc, a.id asc
            """,
            postulacion_ids,
        )
        grouped: dict[int, list[ApprovalRecord]] = {}
        for row in rows:
            approval = map_approval_row(row)
            grouped.setdefault(approval.postulacion_id, []).append(approval)
        return grouped

    @staticmethod
    async def _fetch_reviewers(conn: asyncpg.Connection, postulacion_ids: list[int]) -> dict[int, list[ReviewerRecord]]:
        rows = await conn.fetch(
            """
            select
              r.id,
              r.postulacion_id,
              r.reviewer_id,
              r.feedback,
              r.created_at,
              r.updated_at,
              u.nombre,
              u.apellido,
              u.email,
              u.role
            from postulacion_reviewers r
            join usuarios u on u.id = r.reviewer_id
            where r.postulacion_id = any($1::bigint[])
            order by r.postulacion_id, r.created_at asc, r.id asc
            """,
            postulacion_ids,
        )
        grouped: dict[int, list[ReviewerRecord]] = {}
        for row in rows:
            reviewer = map_reviewer_row(row)
            grouped.setdefault(reviewer.postulacion_id, []).append(reviewer)
        return grouped

    def _notify_reviewer(
        self,
        *,
        record: PostulacionRecord,
        reviewer: asyncpg.Record,
        assigner: asyncpg.Record | None,
        actor: Actor,
    ) -> None:
        if self.notifier is None:
            return
        reviewer_name = display_name(reviewer["nombre"], reviewer["apellido"], reviewer["email"])
        assigner_name = None
        if assigner:
            assigner_name = display_name(assigner["nombre"], assigner["apellido"], assigner["email"])
        try:
            self.notifier.notify_assignment(
                reviewer_email=reviewer["email"],
                reviewer_name=reviewer_name or f"usuario #{reviewer['id']}",
                applicant_name=record.full_name or record.email,
                postulacion_id=record.id,
                assigned_by_name=assigner_name or f"usuario #{actor.id}",
            )
        except Exception:  # pragma: no cover - notification must never fail the assignment
            logger.exception("failed to schedule reviewer notification for postulacion id=%s", record.id)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("ACA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=15,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc

            if self.auto_migrate:
                try:
                    async with pool.acquire() as conn:
                        applied = await apply_migrations(conn)
                except Exception as exc:
                    await pool.close()
                    logger.exception("schema migration failed")
                    raise RepositoryUnavailableError("database schema could not be prepared") from exc
                if applied:
                    logger.info("schema migrated to version %s", max(applied))

            self._pool = pool
            return self._pool

    @staticmethod
    def _ensure_undecided(record: PostulacionRecord) -> None:
        if record.status == "aprobada":
            raise RepositoryStateError("postulacion was already approved")
        if record.status == "rechazada":
            raise RepositoryStateError("postulacion was already rejected")

    @staticmethod
    def _resolve_status_after_vote(*, approvals_count: int, approvals_required: int) -> str:
        if approvals_count >= approvals_required:
            return "aprobada"
        return "en_revision"

    @staticmethod
    def _build_pagination(*, page: int, limit: int, total: int) -> dict[str, Any]:
        total_pages = max(1, -(-total // limit))
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        }

    @staticmethod
    def _internal_error(operation: str, exc: Exception, **context: Any) -> RepositoryInternalError:
        logger.error("%s failed context=%s", operation, context, exc_info=exc)
        return RepositoryInternalError(f"{operation.replace('_', ' ')} failed")

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _truncate(value: str | None, max_length: int) -> str | None:
        if value is None:
            return None
        return value[:max_length]


@lru_cache
def get_repository() -> PostulacionesRepository:
    settings = get_settings()
    return PostulacionesRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        provisioner=AccountProvisioner(
            default_membership_fee=settings.default_membership_fee,
            password_length=settings.generated_password_length,
        ),
        notifier=get_reviewer_notifier(),
        auto_migrate=settings.database_auto_migrate,
    )
