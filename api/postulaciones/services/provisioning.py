from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

import asyncpg  # type: ignore[import-untyped]
import bcrypt

from postulaciones.services.errors import RepositoryInternalError
from postulaciones.services.records import PostulacionRecord

logger = logging.getLogger(__name__)

# No 0/O, 1/l/I: the password is read out of an email or dictated by hand.
PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"
MIN_PASSWORD_LENGTH = 12
BCRYPT_ROUNDS = 12


@dataclass(slots=True)
class ProvisionResult:
    account_id: int
    generated_password: str | None
    reused_existing: bool


def generate_password(length: int = MIN_PASSWORD_LENGTH) -> str:
    size = max(MIN_PASSWORD_LENGTH, length)
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(size))


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def split_full_name(full_name: str | None, email: str) -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        local_part = email.split("@", maxsplit=1)[0] or email
        return local_part, local_part
    first_name = parts[0]
    last_name = " ".join(parts[1:]) or first_name
    return first_name, last_name


class AccountProvisioner:
    """Creates or reactivates the socio account for an approved postulacion.

    Runs on the caller's connection so it commits or rolls back together with
    the approval that crossed the quorum.
    """

    def __init__(self, *, default_membership_fee: int, password_length: int = MIN_PASSWORD_LENGTH) -> None:
        self.default_membership_fee = default_membership_fee
        self.password_length = max(MIN_PASSWORD_LENGTH, password_length)

    async def provision_or_reactivate(
        self,
        conn: asyncpg.Connection,
        postulacion: PostulacionRecord,
    ) -> ProvisionResult:
        email = postulacion.email.strip().lower()
        if not email:
            raise RepositoryInternalError("postulacion has no email to provision an account")
        first_name, last_name = split_full_name(postulacion.full_name, email)

        try:
            existing = await conn.fetchrow(
                """
                select id, activo
                from usuarios
                where lower(email) = $1
                order by id
                limit 1
                for update
                """,
                email,
            )
            if existing and existing["activo"]:
                logger.info(
                    "reusing active account id=%s for postulacion id=%s",
                    existing["id"],
                    postulacion.id,
                )
                return ProvisionResult(account_id=int(existing["id"]), generated_password=None, reused_existing=True)

            password = generate_password(self.password_length)
            password_hash = hash_password(password)

            if existing:
                row = await conn.fetchrow(
                    """
                    update usuarios
                    set
                      nombre = $2,
                      apellido = $3,
                      telefono = $4,
                      rut = $5,
                      ciudad = $6,
                      password_hash = $7,
                      role = 'user',
                      estado_socio = 'activo',
                      fecha_ingreso = coalesce(fecha_ingreso, now()),
                      activo = true,
                      updated_at = now()
                    where id = $1
                    returning id
                    """,
                    existing["id"],
                    first_name,
                    last_name,
                    postulacion.phone or None,
                    postulacion.rut,
                    postulacion.city,
                    password_hash,
                )
                operation = "reactivated"
            else:
                row = await conn.fetchrow(
                    """
                    insert into usuarios (
                      email,
                      nombre,
                      apellido,
                      telefono,
                      rut,
                      ciudad,
                      valor_cuota,
                      estado_socio,
                      fecha_ingreso,
                      lista_negra,
                      password_hash,
                      role,
                      activo
                    )
                    values ($1, $2, $3, $4, $5, $6, $7, 'activo', now(), false, $8, 'user', true)
                    returning id
                    """,
                    email,
                    first_name,
                    last_name,
                    postulacion.phone or None,
                    postulacion.rut,
                    postulacion.city,
                    self.default_membership_fee,
                    password_hash,
                )
                operation = "created"
        except asyncpg.PostgresError as exc:
            raise RepositoryInternalError("account provisioning failed") from exc

        if not row:
            raise RepositoryInternalError("account provisioning failed")

        logger.info("%s account id=%s for postulacion id=%s", operation, row["id"], postulacion.id)
        return ProvisionResult(account_id=int(row["id"]), generated_password=password, reused_existing=False)
