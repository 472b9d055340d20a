from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tradegate.logging import get_logger
from tradegate.storage.errors import ConstraintViolation
from tradegate.storage.models import (
    NON_TERMINAL_STATUSES,
    Identity,
    OtpCheck,
    RefreshRecord,
    ResetTokenRecord,
    Role,
    RoleGrant,
    Verification,
    VerificationDraft,
    VerificationStatus,
)
from tradegate.storage.repositories import DraftMerge, GrantMerge

# Columns writable through update_identity; everything else has a dedicated
# atomic operation.
_UPDATABLE_IDENTITY_COLUMNS = frozenset(
    {
        "email",
        "phone",
        "password_hash",
        "first_name",
        "last_name",
        "company_name",
        "business_type",
        "gst_number",
        "is_verified",
        "is_active",
        "locked_until",
        "admin_id",
        "is_first_login",
        "credentials_expire_at",
        "credentials_used",
        "last_password_change",
        "last_login",
    }
)
_VERIFICATION_STAMP_COLUMNS = frozenset(
    {
        "reviewed_at",
        "reviewer_id",
        "review_notes",
        "rejection_reason",
        "verified_at",
        "fields",
        "documents",
    }
)


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
    for name in ("email", "phone", "admin_id"):
        if name in constraint:
            return name
    return "id"


class PostgresStore:
    """Postgres-backed store implementing every repository."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        required_tables = [
            "identity",
            "identity_role",
            "identity_auth_provider",
            "supplier_verification",
            "verification_draft",
            "refresh_token",
            "password_reset_token",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _grant_from_row(row: Dict[str, Any]) -> RoleGrant:
        return RoleGrant(
            role=Role(row["role"]),
            is_active=row["is_active"],
            granted_at=row["granted_at"],
            verified_at=row.get("verified_at"),
            granted_by=row.get("granted_by"),
        )

    def _load_grants(self, conn, identity_ids: List[str]) -> Dict[str, Dict[Role, RoleGrant]]:
        grants: Dict[str, Dict[Role, RoleGrant]] = {i: {} for i in identity_ids}
        if not identity_ids:
            return grants
        rows = conn.execute(
            "SELECT * FROM identity_role WHERE identity_id = ANY(%s)", (identity_ids,)
        ).fetchall()
        for row in rows:
            grant = self._grant_from_row(row)
            grants[row["identity_id"]][grant.role] = grant
        return grants

    @staticmethod
    def _identity_from_row(row: Dict[str, Any], grants: Dict[Role, RoleGrant]) -> Identity:
        return Identity(
            id=row["id"],
            email=row["email"],
            phone=row.get("phone"),
            password_hash=row.get("password_hash"),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            company_name=row.get("company_name"),
            business_type=row.get("business_type"),
            gst_number=row.get("gst_number"),
            role_grants=grants,
            active_role=Role(row["active_role"]) if row.get("active_role") else None,
            is_verified=row["is_verified"],
            is_active=row["is_active"],
            failed_attempts=row["failed_attempts"],
            locked_until=row.get("locked_until"),
            admin_id=row.get("admin_id"),
            is_first_login=row["is_first_login"],
            credentials_expire_at=row.get("credentials_expire_at"),
            credentials_used=row["credentials_used"],
            last_password_change=row.get("last_password_change"),
            otp=row.get("otp"),
            otp_expires_at=row.get("otp_expires_at"),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_identity(self, conn, where: str, params: tuple, *, lock: bool = False) -> Optional[Identity]:
        query = f"SELECT * FROM identity WHERE {where}"
        if lock:
            query += " FOR UPDATE"
        row = conn.execute(query, params).fetchone()
        if not row:
            return None
        grants = self._load_grants(conn, [row["id"]])[row["id"]]
        return self._identity_from_row(row, grants)

    def _require_locked_identity(self, conn, identity_id: str) -> Identity:
        identity = self._fetch_identity(conn, "id = %s", (identity_id,), lock=True)
        if not identity:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return identity

    @staticmethod
    def _verification_from_row(row: Dict[str, Any]) -> Verification:
        return Verification(
            id=row["id"],
            identity_id=row["identity_id"],
            status=VerificationStatus(row["status"]),
            fields=row.get("fields") or {},
            documents=row.get("documents") or [],
            submitted_at=row.get("submitted_at"),
            reviewed_at=row.get("reviewed_at"),
            reviewer_id=row.get("reviewer_id"),
            review_notes=row.get("review_notes"),
            rejection_reason=row.get("rejection_reason"),
            verified_at=row.get("verified_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshRecord:
        return RefreshRecord(
            id=row["id"],
            identity_id=row["identity_id"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            revoked=row["revoked"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO identity (
                        id, email, phone, password_hash, first_name, last_name,
                        company_name, business_type, gst_number, active_role,
                        is_verified, is_active, admin_id, is_first_login,
                        credentials_expire_at, credentials_used, last_password_change,
                        created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.email,
                        identity.phone,
                        identity.password_hash,
                        identity.first_name,
                        identity.last_name,
                        identity.company_name,
                        identity.business_type,
                        identity.gst_number,
                        identity.active_role.value if identity.active_role else None,
                        identity.is_verified,
                        identity.is_active,
                        identity.admin_id,
                        identity.is_first_login,
                        identity.credentials_expire_at,
                        identity.credentials_used,
                        identity.last_password_change,
                        identity.created_at,
                        identity.updated_at,
                    ),
                )
                for grant in identity.role_grants.values():
                    self._write_grant(conn, identity.id, grant)
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            return self._fetch_identity(conn, "id = %s", (identity_id,))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            return self._fetch_identity(conn, "email = %s", (email.strip(),))

    def get_identity_by_phone(self, phone: str) -> Optional[Identity]:
        with self._connect() as conn:
            return self._fetch_identity(conn, "phone = %s", (phone.strip(),))

    def get_identity_by_email_or_phone(self, identifier: str) -> Optional[Identity]:
        needle = identifier.strip()
        with self._connect() as conn:
            return self._fetch_identity(
                conn,
                "email = %s OR phone = %s ORDER BY (email = %s) DESC LIMIT 1",
                (needle, needle, needle),
            )

    def get_identity_by_admin_id(self, admin_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            return self._fetch_identity(conn, "admin_id = %s", (admin_id.strip().upper(),))

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        illegal = set(fields) - _UPDATABLE_IDENTITY_COLUMNS
        if illegal:
            raise ValueError(f"fields require dedicated operations: {sorted(illegal)}")
        if not fields:
            return self.get_identity(identity_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"UPDATE identity SET {assignments}, updated_at = now() WHERE id = %s RETURNING id",
                    (*fields.values(), identity_id),
                ).fetchone()
                if not row:
                    return None
                return self._fetch_identity(conn, "id = %s", (identity_id,))
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})

    @staticmethod
    def _write_grant(conn, identity_id: str, grant: RoleGrant) -> None:
        conn.execute(
            """
            INSERT INTO identity_role (identity_id, role, is_active, granted_at, verified_at, granted_by)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (identity_id, role) DO UPDATE SET
                is_active = EXCLUDED.is_active,
                verified_at = EXCLUDED.verified_at,
                granted_by = EXCLUDED.granted_by
            """,
            (
                identity_id,
                grant.role.value,
                grant.is_active,
                grant.granted_at,
                grant.verified_at,
                grant.granted_by,
            ),
        )

    def _apply_grant(self, conn, identity: Identity, role: Role, merge: GrantMerge) -> None:
        # Raises RoleExclusivityError before anything is written
        identity.roles.with_role(role)
        grant = merge(identity.role_grants.get(role))
        self._write_grant(conn, identity.id, grant)
        if identity.active_role == role and not grant.is_active:
            conn.execute(
                "UPDATE identity SET active_role = NULL, updated_at = now() WHERE id = %s",
                (identity.id,),
            )
        else:
            conn.execute(
                "UPDATE identity SET updated_at = now() WHERE id = %s", (identity.id,)
            )

    def upsert_role_grant(self, identity_id: str, role: Role, merge: GrantMerge) -> Identity:
        with self._connect() as conn, conn.transaction():
            identity = self._require_locked_identity(conn, identity_id)
            self._apply_grant(conn, identity, Role(role), merge)
            return self._fetch_identity(conn, "id = %s", (identity_id,))

    def delete_role_grant(self, identity_id: str, role: Role) -> Identity:
        role = Role(role)
        with self._connect() as conn, conn.transaction():
            identity = self._require_locked_identity(conn, identity_id)
            if role not in identity.role_grants:
                return identity
            if len(identity.role_grants) == 1:
                raise ConstraintViolation(
                    "cannot remove the last role", {"field": "roles", "role": role.value}
                )
            conn.execute(
                "DELETE FROM identity_role WHERE identity_id = %s AND role = %s",
                (identity_id, role.value),
            )
            conn.execute(
                """
                UPDATE identity
                SET active_role = CASE WHEN active_role = %s THEN NULL ELSE active_role END,
                    updated_at = now()
                WHERE id = %s
                """,
                (role.value, identity_id),
            )
            return self._fetch_identity(conn, "id = %s", (identity_id,))

    def set_active_role(self, identity_id: str, role: Optional[Role]) -> Identity:
        with self._connect() as conn, conn.transaction():
            identity = self._require_locked_identity(conn, identity_id)
            if role is not None:
                role = Role(role)
                grant = identity.role_grants.get(role)
                if not grant or not grant.is_active:
                    raise ConstraintViolation(
                        "role not held", {"field": "active_role", "role": role.value}
                    )
            conn.execute(
                "UPDATE identity SET active_role = %s, updated_at = now() WHERE id = %s",
                (role.value if role else None, identity_id),
            )
            return self._fetch_identity(conn, "id = %s", (identity_id,))

    def increment_failed_attempts(
        self, identity_id: str, *, threshold: int, lock_until: datetime
    ) -> Identity:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE identity
                SET failed_attempts = failed_attempts + 1,
                    locked_until = CASE WHEN failed_attempts + 1 >= %s THEN %s ELSE locked_until END,
                    updated_at = now()
                WHERE id = %s
                RETURNING id
                """,
                (threshold, lock_until, identity_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            return self._fetch_identity(conn, "id = %s", (identity_id,))

    def reset_failed_attempts(self, identity_id: str) -> Identity:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                UPDATE identity SET failed_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s AND (failed_attempts <> 0 OR locked_until IS NOT NULL)
                """,
                (identity_id,),
            )
            identity = self._fetch_identity(conn, "id = %s", (identity_id,))
            if not identity:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            return identity

    def set_otp(self, identity_id: str, otp: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE identity SET otp = %s, otp_expires_at = %s WHERE id = %s",
                (otp, expires_at, identity_id),
            )

    def consume_otp(self, identity_id: str, otp: str, now: datetime) -> OtpCheck:
        with self._connect() as conn, conn.transaction():
            consumed = conn.execute(
                """
                UPDATE identity SET otp = NULL, otp_expires_at = NULL
                WHERE id = %s AND otp = %s AND otp_expires_at > %s
                RETURNING id
                """,
                (identity_id, otp, now),
            ).fetchone()
            if consumed:
                return OtpCheck.VALID
            row = conn.execute(
                "SELECT otp FROM identity WHERE id = %s", (identity_id,)
            ).fetchone()
            if row and row.get("otp") == otp:
                return OtpCheck.EXPIRED
            return OtpCheck.INVALID

    def clear_otp(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE identity SET otp = NULL, otp_expires_at = NULL WHERE id = %s",
                (identity_id,),
            )

    def list_identities_with_roles(self, roles: Iterable[Role]) -> List[Identity]:
        wanted = [Role(r).value for r in roles]
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT i.* FROM identity i
                JOIN identity_role r ON r.identity_id = i.id
                WHERE r.role = ANY(%s)
                ORDER BY i.created_at DESC
                """,
                (wanted,),
            ).fetchall()
            grants = self._load_grants(conn, [row["id"] for row in rows])
            return [self._identity_from_row(row, grants[row["id"]]) for row in rows]

    def delete_identity(self, identity_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM identity WHERE id = %s RETURNING id", (identity_id,)
            ).fetchone()
            return row is not None

    def link_auth_provider(self, identity_id: str, provider: str, provider_uid: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_auth_provider (identity_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, provider_uid) DO NOTHING
                    """,
                    (identity_id, provider, provider_uid),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})

    def get_identity_by_provider(self, provider: str, provider_uid: str) -> Optional[Identity]:
        with self._connect() as conn:
            return self._fetch_identity(
                conn,
                "id = (SELECT identity_id FROM identity_auth_provider WHERE provider = %s AND provider_uid = %s)",
                (provider, provider_uid),
            )

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def upsert_draft(self, identity_id: str, merge: DraftMerge) -> VerificationDraft:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "SELECT * FROM verification_draft WHERE identity_id = %s FOR UPDATE",
                    (identity_id,),
                ).fetchone()
                current = self._draft_from_row(row) if row else None
                draft = merge(current)
                saved = conn.execute(
                    """
                    INSERT INTO verification_draft (identity_id, fields, documents, current_step, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (identity_id) DO UPDATE SET
                        fields = EXCLUDED.fields,
                        documents = EXCLUDED.documents,
                        current_step = EXCLUDED.current_step,
                        updated_at = now()
                    RETURNING *
                    """,
                    (
                        identity_id,
                        json.dumps(draft.fields),
                        json.dumps(draft.documents),
                        draft.current_step,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return self._draft_from_row(saved)

    @staticmethod
    def _draft_from_row(row: Dict[str, Any]) -> VerificationDraft:
        return VerificationDraft(
            identity_id=row["identity_id"],
            fields=row.get("fields") or {},
            documents=row.get("documents") or [],
            current_step=row.get("current_step") or 1,
            updated_at=row["updated_at"],
        )

    def get_draft(self, identity_id: str) -> Optional[VerificationDraft]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_draft WHERE identity_id = %s", (identity_id,)
            ).fetchone()
            return self._draft_from_row(row) if row else None

    def delete_draft(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM verification_draft WHERE identity_id = %s", (identity_id,)
            )

    def create_verification(
        self, verification: Verification, *, grant_merge: Optional[GrantMerge] = None
    ) -> Verification:
        try:
            with self._connect() as conn, conn.transaction():
                identity = self._require_locked_identity(conn, verification.identity_id)
                conn.execute(
                    """
                    INSERT INTO supplier_verification (
                        id, identity_id, status, fields, documents, submitted_at,
                        reviewed_at, reviewer_id, review_notes, rejection_reason,
                        verified_at, created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        verification.id,
                        verification.identity_id,
                        verification.status.value,
                        json.dumps(verification.fields),
                        json.dumps(verification.documents),
                        verification.submitted_at,
                        verification.reviewed_at,
                        verification.reviewer_id,
                        verification.review_notes,
                        verification.rejection_reason,
                        verification.verified_at,
                        verification.created_at,
                        verification.updated_at,
                    ),
                )
                if grant_merge is not None:
                    self._apply_grant(conn, identity, Role.SUPPLIER, grant_merge)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "open verification already exists",
                {"field": "identity_id", "constraint": "one_open_verification"},
            )
        return verification

    def get_verification(self, verification_id: str) -> Optional[Verification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM supplier_verification WHERE id = %s", (verification_id,)
            ).fetchone()
            return self._verification_from_row(row) if row else None

    def latest_verification(self, identity_id: str) -> Optional[Verification]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM supplier_verification WHERE identity_id = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (identity_id,),
            ).fetchone()
            return self._verification_from_row(row) if row else None

    def list_verifications(
        self, status: Optional[VerificationStatus] = None, limit: int = 100
    ) -> List[Verification]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM supplier_verification ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM supplier_verification WHERE status = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (VerificationStatus(status).value, limit),
                ).fetchall()
            return [self._verification_from_row(row) for row in rows]

    def transition_verification(
        self,
        verification_id: str,
        *,
        expected: Iterable[VerificationStatus],
        status: VerificationStatus,
        grant_merge: Optional[GrantMerge] = None,
        **stamps,
    ) -> Optional[Verification]:
        illegal = set(stamps) - _VERIFICATION_STAMP_COLUMNS
        if illegal:
            raise ValueError(f"unknown verification field: {sorted(illegal)}")
        values = [
            json.dumps(v) if name in ("fields", "documents") else v
            for name, v in stamps.items()
        ]
        assignments = "".join(f", {name} = %s" for name in stamps)
        expected_values = [VerificationStatus(s).value for s in expected]
        try:
            with self._connect() as conn, conn.transaction():
                # Compare-and-set on the current status
                row = conn.execute(
                    f"""
                    UPDATE supplier_verification
                    SET status = %s, updated_at = now(){assignments}
                    WHERE id = %s AND status = ANY(%s)
                    RETURNING *
                    """,
                    (status.value, *values, verification_id, expected_values),
                ).fetchone()
                if not row:
                    return None
                if grant_merge is not None:
                    identity = self._require_locked_identity(conn, row["identity_id"])
                    self._apply_grant(conn, identity, Role.SUPPLIER, grant_merge)
                return self._verification_from_row(row)
        except errors.UniqueViolation:
            # Reopening a record while another is open
            if status in NON_TERMINAL_STATUSES:
                return None
            raise

    # ------------------------------------------------------------------
    # Sessions and transient artifacts
    # ------------------------------------------------------------------

    def create_refresh_record(
        self, identity_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, identity_id, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (token_hash) DO UPDATE SET token_hash = EXCLUDED.token_hash
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), identity_id, token_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return self._refresh_from_row(row)

    def find_refresh_record(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
            return self._refresh_from_row(row) if row else None

    def revoke_refresh_record(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now()
                WHERE token_hash = %s AND NOT revoked
                RETURNING id
                """,
                (token_hash,),
            ).fetchone()
            return row is not None

    def revoke_all_refresh_records(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now()
                WHERE identity_id = %s AND NOT revoked
                """,
                (identity_id,),
            )
            return cur.rowcount or 0

    def purge_expired_refresh_records(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    def create_reset_token(self, record: ResetTokenRecord) -> ResetTokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token_hash, identity_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token_hash,
                        record.identity_id,
                        record.expires_at,
                        record.used,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity not found", {"identity_id": record.identity_id})
        return record

    def get_reset_token(self, token_hash: str) -> Optional[ResetTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
            if not row:
                return None
            return ResetTokenRecord(
                token_hash=row["token_hash"],
                identity_id=row["identity_id"],
                expires_at=row["expires_at"],
                used=row["used"],
                created_at=row["created_at"],
            )

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE
                WHERE token_hash = %s AND NOT used AND expires_at > %s
                RETURNING identity_id
                """,
                (token_hash, now),
            ).fetchone()
            return row["identity_id"] if row else None

    def invalidate_reset_tokens(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE password_reset_token SET used = TRUE WHERE identity_id = %s AND NOT used",
                (identity_id,),
            )
            return cur.rowcount or 0
