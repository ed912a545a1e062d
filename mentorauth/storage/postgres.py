from __future__ import annotations

import dataclasses
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from mentorauth.logging import get_logger
from mentorauth.storage.errors import DuplicateRecord
from mentorauth.storage.models import Device, OtpRecord, OtpType, RefreshToken, User

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def _row_to(cls: type, row: dict) -> Any:
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{key: value for key, value in row.items() if key in names})


class PostgresStore:
    """Postgres-backed store; read-check-write sequences run in row-locking transactions."""

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
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes when they are missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA_PATH.read_text())
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user(row: Optional[dict]) -> Optional[User]:
        return _row_to(User, row) if row else None

    @staticmethod
    def _otp(row: Optional[dict]) -> Optional[OtpRecord]:
        if not row:
            return None
        record = _row_to(OtpRecord, row)
        record.otp_type = OtpType(record.otp_type)
        return record

    @staticmethod
    def _device(row: Optional[dict]) -> Optional[Device]:
        return _row_to(Device, row) if row else None

    @staticmethod
    def _token(row: Optional[dict]) -> Optional[RefreshToken]:
        return _row_to(RefreshToken, row) if row else None

    # users
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        phone_number: Optional[str] = None,
        gender: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        country: Optional[str] = None,
        postal_code: Optional[str] = None,
        role: str = "STUDENT",
        email_verified: bool = False,
        phone_verified: bool = False,
        verified_at: Optional[datetime] = None,
        credential: Optional[tuple[str, str]] = None,
    ) -> User:
        """Insert the user and, when given, its credential in one transaction."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, first_name, last_name, phone_number, gender, city,
                        state, country, postal_code, role, email_verified, phone_verified,
                        email_verified_at, phone_verified_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email.strip().lower(),
                        first_name,
                        last_name,
                        phone_number,
                        gender,
                        city,
                        state,
                        country,
                        postal_code,
                        role,
                        email_verified,
                        phone_verified,
                        verified_at if email_verified else None,
                        verified_at if phone_verified else None,
                    ),
                ).fetchone()
                if credential is not None:
                    conn.execute(
                        """
                        INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                        VALUES (%s, %s, %s, now())
                        """,
                        (row["id"], credential[0], credential[1]),
                    )
        except errors.UniqueViolation:
            raise DuplicateRecord("email already exists", {"field": "email"})
        return self._user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email.strip(),)
            ).fetchone()
        return self._user(row)

    def exists_by_email(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM app_user WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return row is not None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user(row)

    def mark_user_verified(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    phone_verified = TRUE,
                    email_verified_at = COALESCE(email_verified_at, %s),
                    phone_verified_at = COALESCE(phone_verified_at, %s),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (at, at, at, user_id),
            ).fetchone()
        return self._user(row)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def increment_failed_attempts(self, email: str, at: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1, updated_at = %s
                WHERE lower(email) = lower(%s)
                RETURNING failed_login_attempts
                """,
                (at, email.strip()),
            ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    def reset_failed_attempts(self, email: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, account_locked_until = NULL
                WHERE lower(email) = lower(%s)
                """,
                (email.strip(),),
            )

    def lock_account(self, email: str, until: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET account_locked_until = %s WHERE lower(email) = lower(%s)",
                (until, email.strip()),
            )

    def record_login(self, email: str, ip: Optional[str], at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user
                SET last_login_at = %s, last_login_ip = %s, updated_at = %s
                WHERE lower(email) = lower(%s)
                """,
                (at, ip, at, email.strip()),
            )

    # one-time passwords
    def insert_otp_unless_recent(self, record: OtpRecord, since: datetime) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                # Serialise issuers for the same identifier/type
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{record.identifier}:{record.otp_type.value}",),
                )
                recent = conn.execute(
                    """
                    SELECT 1 AS found FROM otp_code
                    WHERE identifier = %s AND otp_type = %s AND created_at > %s
                    LIMIT 1
                    """,
                    (record.identifier, record.otp_type.value, since),
                ).fetchone()
                if recent:
                    return False
                conn.execute(
                    """
                    INSERT INTO otp_code (id, identifier, code, otp_type, expires_at, created_at, attempts, verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.identifier,
                        record.code,
                        record.otp_type.value,
                        record.expires_at,
                        record.created_at,
                        record.attempts,
                        record.verified,
                    ),
                )
        return True

    def get_latest_unverified_otp(
        self, identifier: str, otp_type: OtpType
    ) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE identifier = %s AND otp_type = %s AND NOT verified
                ORDER BY created_at DESC LIMIT 1
                """,
                (identifier, OtpType(otp_type).value),
            ).fetchone()
        return self._otp(row)

    def get_latest_verified_otp(
        self, identifier: str, otp_type: OtpType, since: datetime
    ) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE identifier = %s AND otp_type = %s AND verified AND verified_at >= %s
                ORDER BY verified_at DESC LIMIT 1
                """,
                (identifier, OtpType(otp_type).value, since),
            ).fetchone()
        return self._otp(row)

    @contextmanager
    def lock_latest_otp(
        self, identifier: str, otp_type: OtpType
    ) -> Iterator[Optional[OtpRecord]]:
        """Row-lock the latest unverified code; changes are written when the block exits cleanly."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    SELECT * FROM otp_code
                    WHERE identifier = %s AND otp_type = %s AND NOT verified
                    ORDER BY created_at DESC LIMIT 1
                    FOR UPDATE
                    """,
                    (identifier, OtpType(otp_type).value),
                ).fetchone()
                record = self._otp(row)
                yield record
                if record is not None:
                    conn.execute(
                        """
                        UPDATE otp_code
                        SET attempts = %s, verified = %s, verified_at = %s, locked_until = %s
                        WHERE id = %s
                        """,
                        (
                            record.attempts,
                            record.verified,
                            record.verified_at,
                            record.locked_until,
                            record.id,
                        ),
                    )

    def delete_expired_otps(
        self, now: datetime, keep_verified_since: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM otp_code
                WHERE expires_at < %s
                  AND (locked_until IS NULL OR locked_until <= %s)
                  AND NOT (
                    %s::timestamptz IS NOT NULL
                    AND verified
                    AND verified_at >= %s::timestamptz
                  )
                """,
                (now, now, keep_verified_since, keep_verified_since),
            )
            return cur.rowcount

    # devices
    def upsert_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        name: str,
        user_agent: Optional[str],
        ip_address: Optional[str],
        at: datetime,
    ) -> Device:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_device (id, user_id, fingerprint, name, user_agent, ip_address, created_at, last_active_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, fingerprint) DO UPDATE
                SET is_active = TRUE,
                    ip_address = EXCLUDED.ip_address,
                    user_agent = EXCLUDED.user_agent,
                    last_active_at = EXCLUDED.last_active_at
                RETURNING *
                """,
                (str(uuid.uuid4()), user_id, fingerprint, name, user_agent, ip_address, at, at),
            ).fetchone()
        return self._device(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_device WHERE id = %s", (device_id,)
            ).fetchone()
        return self._device(row)

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_device WHERE user_id = %s AND fingerprint = %s",
                (user_id, fingerprint),
            ).fetchone()
        return self._device(row)

    def list_active_devices(self, user_id: str) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_device
                WHERE user_id = %s AND is_active
                ORDER BY last_active_at ASC
                """,
                (user_id,),
            ).fetchall()
        return [self._device(row) for row in rows]

    def count_active_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM user_device WHERE user_id = %s AND is_active",
                (user_id,),
            ).fetchone()
        return int(row["total"])

    def set_device_active(self, device_id: str, active: bool) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_device
                SET is_active = %s, is_streaming = CASE WHEN %s THEN is_streaming ELSE FALSE END
                WHERE id = %s
                RETURNING *
                """,
                (active, active, device_id),
            ).fetchone()
        return self._device(row)

    def touch_device(self, device_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_device SET last_active_at = %s WHERE id = %s",
                (at, device_id),
            )

    def start_streaming(
        self, user_id: str, device_id: str, max_streams: int
    ) -> List[Device]:
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    "SELECT * FROM user_device WHERE user_id = %s AND is_active FOR UPDATE",
                    (user_id,),
                ).fetchall()
                blocking = [
                    self._device(row)
                    for row in rows
                    if row["is_streaming"] and row["id"] != device_id
                ]
                if len(blocking) >= max_streams:
                    return blocking
                conn.execute(
                    "UPDATE user_device SET is_streaming = TRUE WHERE id = %s AND user_id = %s",
                    (device_id, user_id),
                )
        return []

    def stop_streaming(self, user_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_device SET is_streaming = FALSE
                WHERE id = %s AND user_id = %s AND is_streaming
                """,
                (device_id, user_id),
            )
            return cur.rowcount > 0

    def deactivate_devices_inactive_since(self, cutoff: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_device SET is_active = FALSE, is_streaming = FALSE
                WHERE is_active AND last_active_at < %s
                RETURNING id
                """,
                (cutoff,),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # refresh tokens
    def replace_device_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "SELECT id FROM user_device WHERE id = %s FOR UPDATE", (token.device_id,)
                )
                conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, revoked_reason = 'replaced'
                    WHERE device_id = %s AND NOT revoked
                    """,
                    (token.created_at, token.device_id),
                )
                try:
                    conn.execute(
                        """
                        INSERT INTO refresh_token (id, token, user_id, device_id, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            token.id,
                            token.token,
                            token.user_id,
                            token.device_id,
                            token.expires_at,
                            token.created_at,
                        ),
                    )
                except errors.UniqueViolation:
                    raise DuplicateRecord(
                        "device already has an active refresh token",
                        {"device_id": token.device_id},
                    )
        return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (value,)
            ).fetchone()
        return self._token(row)

    def revoke_refresh_token_if_active(
        self, value: str, reason: str, at: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE token = %s AND NOT revoked
                """,
                (at, reason, value),
            )
            return cur.rowcount == 1

    def revoke_device_refresh_tokens(
        self, device_id: str, reason: str, at: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE device_id = %s AND NOT revoked
                """,
                (at, reason, device_id),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, at: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND NOT revoked
                """,
                (at, reason, user_id),
            )
            return cur.rowcount

    def delete_expired_or_revoked_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE revoked OR expires_at < %s", (now,)
            )
            return cur.rowcount
