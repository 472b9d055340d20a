from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tradegate.logging import get_logger
from tradegate.storage.errors import ConstraintViolation
from tradegate.storage.models import (
    NON_TERMINAL_STATUSES,
    AuthProviderLink,
    Identity,
    OtpCheck,
    RefreshRecord,
    ResetTokenRecord,
    Role,
    RoleGrant,
    Verification,
    VerificationDraft,
    VerificationStatus,
    utcnow,
)
from tradegate.storage.repositories import DraftMerge, GrantMerge

_IDENTITY_DATETIME_FIELDS = (
    "locked_until",
    "credentials_expire_at",
    "last_password_change",
    "otp_expires_at",
    "last_login",
    "created_at",
    "updated_at",
)
_VERIFICATION_DATETIME_FIELDS = (
    "submitted_at",
    "reviewed_at",
    "verified_at",
    "created_at",
    "updated_at",
)
# Columns callers may not touch through update_identity; they have dedicated
# atomic operations.
_PROTECTED_IDENTITY_FIELDS = frozenset(
    {"id", "role_grants", "active_role", "failed_attempts", "otp", "otp_expires_at"}
)


class MemoryStore:
    """In-memory store implementing every repository, snapshotted to disk."""

    def __init__(self, fs_root: str = "/tmp/tradegate") -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.providers: List[AuthProviderLink] = []
        self.verifications: Dict[str, Verification] = {}
        self.drafts: Dict[str, VerificationDraft] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self.reset_tokens: Dict[str, ResetTokenRecord] = {}
        # RLock so composite operations can call helpers that also lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def _check_unique(self, identity: Identity, *, exclude_id: Optional[str] = None) -> None:
        for existing in self.identities.values():
            if existing.id == exclude_id:
                continue
            if existing.email.lower() == identity.email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity.phone and existing.phone == identity.phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if identity.admin_id and existing.admin_id == identity.admin_id:
                raise ConstraintViolation(
                    "admin id already exists", {"field": "admin_id"}
                )

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.identities.get(identity_id)
        if not identity:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return identity

    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("identity id already exists", {"field": "id"})
            self._check_unique(identity)
            stored = copy.deepcopy(identity)
            self.identities[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def _find(self, predicate) -> Optional[Identity]:
        with self._data_lock:
            match = next((i for i in self.identities.values() if predicate(i)), None)
            return copy.deepcopy(match) if match else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        needle = email.strip().lower()
        return self._find(lambda i: i.email.lower() == needle)

    def get_identity_by_phone(self, phone: str) -> Optional[Identity]:
        needle = phone.strip()
        return self._find(lambda i: i.phone is not None and i.phone == needle)

    def get_identity_by_email_or_phone(self, identifier: str) -> Optional[Identity]:
        return self.get_identity_by_email(identifier) or self.get_identity_by_phone(
            identifier
        )

    def get_identity_by_admin_id(self, admin_id: str) -> Optional[Identity]:
        needle = admin_id.strip().upper()
        return self._find(lambda i: i.admin_id is not None and i.admin_id == needle)

    def update_identity(self, identity_id: str, **fields) -> Optional[Identity]:
        illegal = _PROTECTED_IDENTITY_FIELDS.intersection(fields)
        if illegal:
            raise ValueError(f"fields require dedicated operations: {sorted(illegal)}")
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            candidate = copy.deepcopy(identity)
            for name, value in fields.items():
                if not hasattr(candidate, name):
                    raise ValueError(f"unknown identity field: {name}")
                setattr(candidate, name, value)
            if {"email", "phone", "admin_id"} & fields.keys():
                self._check_unique(candidate, exclude_id=identity_id)
            candidate.updated_at = utcnow()
            self.identities[identity_id] = candidate
            self._persist_state()
            return copy.deepcopy(candidate)

    def _apply_grant(self, identity: Identity, role: Role, merge: GrantMerge) -> None:
        # RoleSet construction raises RoleExclusivityError before anything changes
        identity.roles.with_role(role)
        grant = merge(identity.role_grants.get(role))
        identity.role_grants[role] = grant
        if identity.active_role == role and not grant.is_active:
            identity.active_role = None
        identity.updated_at = utcnow()

    def upsert_role_grant(
        self, identity_id: str, role: Role, merge: GrantMerge
    ) -> Identity:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            candidate = copy.deepcopy(identity)
            self._apply_grant(candidate, Role(role), merge)
            self.identities[identity_id] = candidate
            self._persist_state()
            return copy.deepcopy(candidate)

    def delete_role_grant(self, identity_id: str, role: Role) -> Identity:
        role = Role(role)
        with self._data_lock:
            identity = self._require_identity(identity_id)
            if role not in identity.role_grants:
                return copy.deepcopy(identity)
            if len(identity.role_grants) == 1:
                raise ConstraintViolation(
                    "cannot remove the last role", {"field": "roles", "role": role.value}
                )
            candidate = copy.deepcopy(identity)
            candidate.role_grants.pop(role)
            if candidate.active_role == role:
                candidate.active_role = None
            candidate.updated_at = utcnow()
            self.identities[identity_id] = candidate
            self._persist_state()
            return copy.deepcopy(candidate)

    def set_active_role(self, identity_id: str, role: Optional[Role]) -> Identity:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            if role is not None:
                role = Role(role)
                grant = identity.role_grants.get(role)
                if not grant or not grant.is_active:
                    raise ConstraintViolation(
                        "role not held", {"field": "active_role", "role": role.value}
                    )
            identity.active_role = role
            identity.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(identity)

    def increment_failed_attempts(
        self, identity_id: str, *, threshold: int, lock_until: datetime
    ) -> Identity:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            identity.failed_attempts += 1
            if identity.failed_attempts >= threshold:
                identity.locked_until = lock_until
            identity.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(identity)

    def reset_failed_attempts(self, identity_id: str) -> Identity:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            if identity.failed_attempts or identity.locked_until:
                identity.failed_attempts = 0
                identity.locked_until = None
                identity.updated_at = utcnow()
                self._persist_state()
            return copy.deepcopy(identity)

    def set_otp(self, identity_id: str, otp: str, expires_at: datetime) -> None:
        with self._data_lock:
            identity = self._require_identity(identity_id)
            identity.otp = otp
            identity.otp_expires_at = expires_at
            self._persist_state()

    def consume_otp(self, identity_id: str, otp: str, now: datetime) -> OtpCheck:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity or not identity.otp or identity.otp != otp:
                return OtpCheck.INVALID
            if identity.otp_expires_at is None or identity.otp_expires_at <= now:
                return OtpCheck.EXPIRED
            identity.otp = None
            identity.otp_expires_at = None
            self._persist_state()
            return OtpCheck.VALID

    def clear_otp(self, identity_id: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity or identity.otp is None:
                return
            identity.otp = None
            identity.otp_expires_at = None
            self._persist_state()

    def list_identities_with_roles(self, roles: Iterable[Role]) -> List[Identity]:
        wanted = {Role(r) for r in roles}
        with self._data_lock:
            matches = [
                copy.deepcopy(i)
                for i in self.identities.values()
                if wanted.intersection(i.role_grants)
            ]
        return sorted(matches, key=lambda i: i.created_at, reverse=True)

    def delete_identity(self, identity_id: str) -> bool:
        with self._data_lock:
            if identity_id not in self.identities:
                return False
            self.identities.pop(identity_id)
            self.providers = [p for p in self.providers if p.identity_id != identity_id]
            self.drafts.pop(identity_id, None)
            for key, record in list(self.refresh_records.items()):
                if record.identity_id == identity_id:
                    self.refresh_records.pop(key)
            for key, record in list(self.reset_tokens.items()):
                if record.identity_id == identity_id:
                    self.reset_tokens.pop(key)
            self._persist_state()
            return True

    def link_auth_provider(
        self, identity_id: str, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            self._require_identity(identity_id)
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    return
            self.providers.append(
                AuthProviderLink(
                    provider=provider, provider_uid=provider_uid, identity_id=identity_id
                )
            )
            self._persist_state()

    def get_identity_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Identity]:
        with self._data_lock:
            for link in self.providers:
                if link.provider == provider and link.provider_uid == provider_uid:
                    return self.get_identity(link.identity_id)
            return None

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def upsert_draft(self, identity_id: str, merge: DraftMerge) -> VerificationDraft:
        with self._data_lock:
            self._require_identity(identity_id)
            current = self.drafts.get(identity_id)
            draft = merge(copy.deepcopy(current) if current else None)
            draft.updated_at = utcnow()
            self.drafts[identity_id] = draft
            self._persist_state()
            return copy.deepcopy(draft)

    def get_draft(self, identity_id: str) -> Optional[VerificationDraft]:
        with self._data_lock:
            draft = self.drafts.get(identity_id)
            return copy.deepcopy(draft) if draft else None

    def delete_draft(self, identity_id: str) -> None:
        with self._data_lock:
            if self.drafts.pop(identity_id, None) is not None:
                self._persist_state()

    def create_verification(
        self, verification: Verification, *, grant_merge: Optional[GrantMerge] = None
    ) -> Verification:
        with self._data_lock:
            identity = self._require_identity(verification.identity_id)
            if verification.status in NON_TERMINAL_STATUSES and any(
                v.identity_id == verification.identity_id
                and v.status in NON_TERMINAL_STATUSES
                for v in self.verifications.values()
            ):
                raise ConstraintViolation(
                    "open verification already exists",
                    {"field": "identity_id", "constraint": "one_open_verification"},
                )
            candidate = copy.deepcopy(identity)
            if grant_merge is not None:
                self._apply_grant(candidate, Role.SUPPLIER, grant_merge)
            self.identities[candidate.id] = candidate
            stored = copy.deepcopy(verification)
            self.verifications[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_verification(self, verification_id: str) -> Optional[Verification]:
        with self._data_lock:
            record = self.verifications.get(verification_id)
            return copy.deepcopy(record) if record else None

    def latest_verification(self, identity_id: str) -> Optional[Verification]:
        with self._data_lock:
            records = [
                v for v in self.verifications.values() if v.identity_id == identity_id
            ]
            if not records:
                return None
            latest = max(records, key=lambda v: v.created_at)
            return copy.deepcopy(latest)

    def list_verifications(
        self, status: Optional[VerificationStatus] = None, limit: int = 100
    ) -> List[Verification]:
        with self._data_lock:
            results = [
                copy.deepcopy(v)
                for v in self.verifications.values()
                if status is None or v.status == status
            ]
        return sorted(results, key=lambda v: v.created_at, reverse=True)[:limit]

    def transition_verification(
        self,
        verification_id: str,
        *,
        expected: Iterable[VerificationStatus],
        status: VerificationStatus,
        grant_merge: Optional[GrantMerge] = None,
        **stamps,
    ) -> Optional[Verification]:
        allowed = set(expected)
        with self._data_lock:
            record = self.verifications.get(verification_id)
            if not record or record.status not in allowed:
                return None
            updated = copy.deepcopy(record)
            updated.status = status
            for name, value in stamps.items():
                if not hasattr(updated, name):
                    raise ValueError(f"unknown verification field: {name}")
                setattr(updated, name, value)
            updated.updated_at = utcnow()
            if grant_merge is not None:
                identity = copy.deepcopy(self._require_identity(record.identity_id))
                self._apply_grant(identity, Role.SUPPLIER, grant_merge)
                self.identities[identity.id] = identity
            self.verifications[verification_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Sessions and transient artifacts
    # ------------------------------------------------------------------

    def create_refresh_record(
        self, identity_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshRecord:
        with self._data_lock:
            self._require_identity(identity_id)
            existing = self.refresh_records.get(token_hash)
            if existing:
                return copy.deepcopy(existing)
            record = RefreshRecord(
                id=str(uuid.uuid4()),
                identity_id=identity_id,
                token_hash=token_hash,
                expires_at=expires_at,
            )
            self.refresh_records[token_hash] = record
            self._persist_state()
            return copy.deepcopy(record)

    def find_refresh_record(self, token_hash: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_records.get(token_hash)
            return copy.deepcopy(record) if record else None

    def revoke_refresh_record(self, token_hash: str) -> bool:
        with self._data_lock:
            record = self.refresh_records.get(token_hash)
            if not record or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_all_refresh_records(self, identity_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for record in self.refresh_records.values():
                if record.identity_id == identity_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_expired_refresh_records(self, now: datetime) -> int:
        with self._data_lock:
            stale = [k for k, r in self.refresh_records.items() if r.expires_at <= now]
            for key in stale:
                self.refresh_records.pop(key)
            if stale:
                self._persist_state()
            return len(stale)

    def create_reset_token(self, record: ResetTokenRecord) -> ResetTokenRecord:
        with self._data_lock:
            self._require_identity(record.identity_id)
            self.reset_tokens[record.token_hash] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_reset_token(self, token_hash: str) -> Optional[ResetTokenRecord]:
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            return copy.deepcopy(record) if record else None

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            if not record or record.used or record.expires_at <= now:
                return None
            record.used = True
            self._persist_state()
            return record.identity_id

    def invalidate_reset_tokens(self, identity_id: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.reset_tokens.values():
                if record.identity_id == identity_id and not record.used:
                    record.used = True
                    count += 1
            if count:
                self._persist_state()
            return count

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_identity(self, identity: Identity) -> dict:
        data = asdict(identity)
        for name in _IDENTITY_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(identity, name))
        data["active_role"] = identity.active_role.value if identity.active_role else None
        data["role_grants"] = [
            {
                "role": grant.role.value,
                "is_active": grant.is_active,
                "granted_at": self._serialize_datetime(grant.granted_at),
                "verified_at": self._serialize_datetime(grant.verified_at),
                "granted_by": grant.granted_by,
            }
            for grant in identity.role_grants.values()
        ]
        return data

    def _deserialize_identity(self, data: dict) -> Identity:
        payload = dict(data)
        for name in _IDENTITY_DATETIME_FIELDS:
            payload[name] = self._deserialize_datetime(payload.get(name))
        grants = {}
        for raw in payload.pop("role_grants", []):
            role = Role(raw["role"])
            grants[role] = RoleGrant(
                role=role,
                is_active=raw.get("is_active", True),
                granted_at=self._deserialize_datetime(raw.get("granted_at")) or utcnow(),
                verified_at=self._deserialize_datetime(raw.get("verified_at")),
                granted_by=raw.get("granted_by"),
            )
        payload["role_grants"] = grants
        return Identity(**payload)

    def _serialize_verification(self, record: Verification) -> dict:
        data = asdict(record)
        data["status"] = record.status.value
        for name in _VERIFICATION_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(record, name))
        return data

    def _deserialize_verification(self, data: dict) -> Verification:
        payload = dict(data)
        payload["status"] = VerificationStatus(payload["status"])
        for name in _VERIFICATION_DATETIME_FIELDS:
            payload[name] = self._deserialize_datetime(payload.get(name))
        return Verification(**payload)

    def _persist_state(self) -> None:
        state: Dict[str, Any] = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "providers": [
                {**asdict(p), "created_at": self._serialize_datetime(p.created_at)}
                for p in self.providers
            ],
            "verifications": [
                self._serialize_verification(v) for v in self.verifications.values()
            ],
            "drafts": [
                {**asdict(d), "updated_at": self._serialize_datetime(d.updated_at)}
                for d in self.drafts.values()
            ],
            "refresh_records": [
                {
                    **asdict(r),
                    "expires_at": self._serialize_datetime(r.expires_at),
                    "created_at": self._serialize_datetime(r.created_at),
                    "revoked_at": self._serialize_datetime(r.revoked_at),
                }
                for r in self.refresh_records.values()
            ],
            "reset_tokens": [
                {
                    **asdict(t),
                    "expires_at": self._serialize_datetime(t.expires_at),
                    "created_at": self._serialize_datetime(t.created_at),
                }
                for t in self.reset_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.identities = {
            raw["id"]: self._deserialize_identity(raw) for raw in data.get("identities", [])
        }
        self.providers = [
            AuthProviderLink(
                provider=raw["provider"],
                provider_uid=raw["provider_uid"],
                identity_id=raw["identity_id"],
                created_at=self._deserialize_datetime(raw.get("created_at")) or utcnow(),
            )
            for raw in data.get("providers", [])
        ]
        self.verifications = {
            raw["id"]: self._deserialize_verification(raw)
            for raw in data.get("verifications", [])
        }
        self.drafts = {
            raw["identity_id"]: VerificationDraft(
                identity_id=raw["identity_id"],
                fields=raw.get("fields") or {},
                documents=raw.get("documents") or [],
                current_step=raw.get("current_step", 1),
                updated_at=self._deserialize_datetime(raw.get("updated_at")) or utcnow(),
            )
            for raw in data.get("drafts", [])
        }
        self.refresh_records = {
            raw["token_hash"]: RefreshRecord(
                id=raw["id"],
                identity_id=raw["identity_id"],
                token_hash=raw["token_hash"],
                expires_at=self._deserialize_datetime(raw["expires_at"]),
                revoked=raw.get("revoked", False),
                created_at=self._deserialize_datetime(raw.get("created_at")) or utcnow(),
                revoked_at=self._deserialize_datetime(raw.get("revoked_at")),
            )
            for raw in data.get("refresh_records", [])
        }
        self.reset_tokens = {
            raw["token_hash"]: ResetTokenRecord(
                token_hash=raw["token_hash"],
                identity_id=raw["identity_id"],
                expires_at=self._deserialize_datetime(raw["expires_at"]),
                used=raw.get("used", False),
                created_at=self._deserialize_datetime(raw.get("created_at")) or utcnow(),
            )
            for raw in data.get("reset_tokens", [])
        }
        return True
