from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    ensure_utc,
    normalize_email,
    safe_row_value,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    AuditEvent,
    ExternalAuthState,
    ExternalLogin,
    RefreshToken,
    RotationOutcome,
    RotationStatus,
    TwoFactorChallenge,
    TwoFactorConfig,
    User,
    new_id,
    new_security_stamp,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        email_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        first_name TEXT,
        last_name TEXT,
        security_stamp TEXT NOT NULL,
        access_failed_count INTEGER NOT NULL DEFAULT 0,
        lockout_end TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_user_email_idx ON auth_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES auth_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_two_factor (
        user_id TEXT PRIMARY KEY REFERENCES auth_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        recovery_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        enabled_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_external_login (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_key TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_key),
        UNIQUE (user_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        family_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE,
        is_invalidated BOOLEAN NOT NULL DEFAULT FALSE,
        is_persistent BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_token_user_idx ON auth_refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_two_factor_challenge (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        is_used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_external_state (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        provider TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        user_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_audit_event (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        user_id TEXT,
        target_type TEXT,
        target_id TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for principals, tokens, challenges and audit rows.

    Operations that must be atomic (rotation, attempt counting, state
    consumption) run inside one transaction and lock the affected row.
    """

    def __init__(self, dsn: str, *, encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            email_confirmed=bool(safe_row_value(row, "email_confirmed", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            security_stamp=row["security_stamp"],
            access_failed_count=int(safe_row_value(row, "access_failed_count", 0)),
            lockout_end=ensure_utc(row.get("lockout_end")),
            is_active=bool(safe_row_value(row, "is_active", True)),
            created_at=ensure_utc(row["created_at"]),
            meta=row.get("meta"),
        )

    def _row_to_refresh(self, row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            token_hash=row["token_hash"],
            user_id=row["user_id"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            is_used=bool(row["is_used"]),
            is_invalidated=bool(row["is_invalidated"]),
            is_persistent=bool(safe_row_value(row, "is_persistent", False)),
            family_id=row.get("family_id"),
        )

    def _row_to_challenge(self, row: Dict[str, Any]) -> TwoFactorChallenge:
        return TwoFactorChallenge(
            id=row["id"],
            token_hash=row["token_hash"],
            user_id=row["user_id"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            is_remember_me=bool(row["is_remember_me"]),
            failed_attempts=int(row["failed_attempts"]),
            is_used=bool(row["is_used"]),
        )

    def _row_to_state(self, row: Dict[str, Any]) -> ExternalAuthState:
        return ExternalAuthState(
            id=row["id"],
            token_hash=row["token_hash"],
            provider=row["provider"],
            redirect_uri=row["redirect_uri"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            user_id=row.get("user_id"),
            is_used=bool(row["is_used"]),
        )

    def _row_to_link(self, row: Dict[str, Any]) -> ExternalLogin:
        return ExternalLogin(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            provider_key=row["provider_key"],
            created_at=ensure_utc(row["created_at"]),
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        email_confirmed: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=new_id(),
            email=email.strip(),
            email_confirmed=email_confirmed,
            first_name=first_name,
            last_name=last_name,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_user (id, email, email_confirmed, first_name, last_name, security_stamp, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        email_confirmed,
                        first_name,
                        last_name,
                        user.security_stamp,
                        user.created_at,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_credential (user_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo, updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def record_failed_login(
        self, user_id: str, *, max_failures: int, lockout_until: datetime
    ) -> Optional[User]:
        # SET expressions all read the pre-update row
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user SET
                    lockout_end = CASE WHEN access_failed_count + 1 >= %s THEN %s ELSE lockout_end END,
                    access_failed_count = CASE WHEN access_failed_count + 1 >= %s THEN 0
                        ELSE access_failed_count + 1 END
                WHERE id = %s
                RETURNING *
                """,
                (max_failures, lockout_until, max_failures, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def reset_failed_logins(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET access_failed_count = 0, lockout_end = NULL WHERE id = %s",
                (user_id,),
            )

    def rotate_security_stamp(self, user_id: str) -> Optional[str]:
        stamp = new_security_stamp()
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_user SET security_stamp = %s WHERE id = %s RETURNING id",
                (stamp, user_id),
            ).fetchone()
        return stamp if row else None

    # -- two-factor configuration -----------------------------------------

    def save_two_factor_config(self, config: TwoFactorConfig) -> TwoFactorConfig:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_two_factor (user_id, secret, enabled, recovery_code_hashes, created_at, enabled_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE SET secret = EXCLUDED.secret,
                        enabled = EXCLUDED.enabled,
                        recovery_code_hashes = EXCLUDED.recovery_code_hashes,
                        enabled_at = EXCLUDED.enabled_at
                    """,
                    (
                        config.user_id,
                        encrypt_secret(self._cipher, config.secret),
                        config.enabled,
                        list(config.recovery_code_hashes),
                        config.created_at,
                        config.enabled_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": config.user_id}
            )
        return config

    def get_two_factor_config(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_two_factor WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorConfig(
            user_id=row["user_id"],
            secret=decrypt_secret(self._cipher, row["secret"]),
            enabled=bool(row["enabled"]),
            recovery_code_hashes=list(safe_row_value(row, "recovery_code_hashes", [])),
            created_at=ensure_utc(row["created_at"]),
            enabled_at=ensure_utc(row.get("enabled_at")),
        )

    def delete_two_factor_config(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_two_factor WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    def redeem_recovery_code(
        self, challenge_id: str, code_hash: str, *, max_attempts: int
    ) -> bool:
        """Spend a live challenge and one recovery code in one transaction."""
        with self._connect() as conn, conn.transaction():
            challenge = conn.execute(
                """
                SELECT user_id FROM auth_two_factor_challenge
                WHERE id = %s AND NOT is_used AND failed_attempts < %s
                FOR UPDATE
                """,
                (challenge_id, max_attempts),
            ).fetchone()
            if not challenge:
                return False
            removed = conn.execute(
                """
                UPDATE auth_two_factor
                SET recovery_code_hashes = array_remove(recovery_code_hashes, %s)
                WHERE user_id = %s AND %s = ANY(recovery_code_hashes)
                RETURNING user_id
                """,
                (code_hash, challenge["user_id"], code_hash),
            ).fetchone()
            if not removed:
                return False
            conn.execute(
                "UPDATE auth_two_factor_challenge SET is_used = TRUE WHERE id = %s",
                (challenge_id,),
            )
            return True

    # -- external logins ---------------------------------------------------

    def link_external_login(
        self, user_id: str, provider: str, provider_key: str
    ) -> ExternalLogin:
        link = ExternalLogin(
            id=new_id(), user_id=user_id, provider=provider, provider_key=provider_key
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_external_login (id, user_id, provider, provider_key, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (link.id, user_id, provider, provider_key, link.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "external login already linked", {"provider": provider, "user_id": user_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return link

    def get_user_by_external_login(self, provider: str, provider_key: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM auth_user u
                JOIN auth_external_login l ON l.user_id = u.id
                WHERE l.provider = %s AND l.provider_key = %s
                """,
                (provider, provider_key),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_external_logins(self, user_id: str) -> List[ExternalLogin]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_external_login WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_link(row) for row in rows]

    def unlink_external_login(self, user_id: str, provider: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_external_login WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            return cur.rowcount > 0

    # -- refresh tokens ----------------------------------------------------

    def _insert_refresh(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO auth_refresh_token (id, token_hash, user_id, family_id, created_at, expires_at,
                is_used, is_invalidated, is_persistent)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.token_hash,
                token.user_id,
                token.family_id,
                token.created_at,
                token.expires_at,
                token.is_used,
                token.is_invalidated,
                token.is_persistent,
            ),
        )

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"token_id": token.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": token.user_id})
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh(row) for row in rows]

    def rotate_refresh_token(
        self,
        token_hash: str,
        *,
        now: datetime,
        build_successor: Callable[[RefreshToken], RefreshToken],
    ) -> RotationOutcome:
        """Redeem a presented refresh value inside one transaction.

        The row lock makes a concurrent redeemer of the same value wait and
        then observe ``is_used``. Marking and inserting commit together or not
        at all.
        """
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "SELECT * FROM auth_refresh_token WHERE token_hash = %s FOR UPDATE",
                    (token_hash,),
                ).fetchone()
                if not row:
                    return RotationOutcome(status=RotationStatus.NOT_FOUND)
                token = self._row_to_refresh(row)
                if token.expires_at <= now:
                    return RotationOutcome(status=RotationStatus.EXPIRED, token=token)
                if token.is_invalidated:
                    return RotationOutcome(status=RotationStatus.INVALIDATED, token=token)
                if token.is_used:
                    revoked = self._invalidate_user_tokens(conn, token.user_id, now)
                    conn.execute(
                        "UPDATE auth_refresh_token SET is_invalidated = TRUE WHERE id = %s",
                        (token.id,),
                    )
                    token.is_invalidated = True
                    return RotationOutcome(
                        status=RotationStatus.REUSED, token=token, revoked_count=revoked
                    )
                successor = build_successor(token)
                conn.execute(
                    "UPDATE auth_refresh_token SET is_used = TRUE WHERE id = %s", (token.id,)
                )
                self._insert_refresh(conn, successor)
                token.is_used = True
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"token_hash": token_hash})
        return RotationOutcome(status=RotationStatus.ROTATED, token=token, successor=successor)

    def _invalidate_user_tokens(self, conn, user_id: str, now: datetime) -> int:
        cur = conn.execute(
            """
            UPDATE auth_refresh_token SET is_invalidated = TRUE
            WHERE user_id = %s AND NOT is_invalidated AND expires_at > %s
            """,
            (user_id, now),
        )
        return cur.rowcount

    def invalidate_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn, conn.transaction():
            return self._invalidate_user_tokens(conn, user_id, now)

    def invalidate_refresh_family(self, family_id: str, *, now: datetime) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                UPDATE auth_refresh_token SET is_invalidated = TRUE
                WHERE family_id = %s AND NOT is_invalidated AND expires_at > %s
                """,
                (family_id, now),
            )
            return cur.rowcount

    # -- two-factor challenges ---------------------------------------------

    def create_two_factor_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_two_factor_challenge (id, token_hash, user_id, created_at, expires_at,
                        is_remember_me, failed_attempts, is_used)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        challenge.id,
                        challenge.token_hash,
                        challenge.user_id,
                        challenge.created_at,
                        challenge.expires_at,
                        challenge.is_remember_me,
                        challenge.failed_attempts,
                        challenge.is_used,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": challenge.user_id})
        return challenge

    def get_two_factor_challenge_by_hash(self, token_hash: str) -> Optional[TwoFactorChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_two_factor_challenge WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_challenge(row) if row else None

    def register_challenge_failure(
        self, challenge_id: str, *, max_attempts: int
    ) -> Optional[int]:
        # Conditional increment so parallel guesses cannot overshoot the cap
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_two_factor_challenge SET failed_attempts = failed_attempts + 1
                WHERE id = %s AND NOT is_used AND failed_attempts < %s
                RETURNING failed_attempts
                """,
                (challenge_id, max_attempts),
            ).fetchone()
        return int(row["failed_attempts"]) if row else None

    def consume_two_factor_challenge(self, challenge_id: str, *, max_attempts: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_two_factor_challenge SET is_used = TRUE
                WHERE id = %s AND NOT is_used AND failed_attempts < %s
                RETURNING id
                """,
                (challenge_id, max_attempts),
            ).fetchone()
        return row is not None

    # -- external sign-in state ----------------------------------------------

    def create_external_state(self, state: ExternalAuthState) -> ExternalAuthState:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_external_state (id, token_hash, provider, redirect_uri, user_id,
                    created_at, expires_at, is_used)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    state.id,
                    state.token_hash,
                    state.provider,
                    state.redirect_uri,
                    state.user_id,
                    state.created_at,
                    state.expires_at,
                    state.is_used,
                ),
            )
        return state

    def consume_external_state(self, token_hash: str) -> Optional[ExternalAuthState]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM auth_external_state WHERE token_hash = %s FOR UPDATE",
                (token_hash,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "UPDATE auth_external_state SET is_used = TRUE WHERE id = %s", (row["id"],)
            )
        return self._row_to_state(row)

    # -- audit and retention -----------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_audit_event (id, action, user_id, target_type, target_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.user_id,
                    event.target_type,
                    event.target_id,
                    json.dumps(event.metadata, default=str) if event.metadata else None,
                    event.created_at,
                ),
            )

    def list_audit_events(self, user_id: Optional[str] = None) -> List[AuditEvent]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM auth_audit_event WHERE user_id = %s ORDER BY created_at",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_audit_event ORDER BY created_at"
                ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                action=row["action"],
                created_at=ensure_utc(row["created_at"]),
                user_id=row.get("user_id"),
                target_type=row.get("target_type"),
                target_id=row.get("target_id"),
                metadata=row.get("metadata"),
            )
            for row in rows
        ]

    def purge_expired(self, now: datetime) -> dict[str, int]:
        with self._connect() as conn, conn.transaction():
            tokens = conn.execute(
                """
                DELETE FROM auth_refresh_token
                WHERE expires_at <= %s AND (is_used OR is_invalidated)
                """,
                (now,),
            ).rowcount
            challenges = conn.execute(
                "DELETE FROM auth_two_factor_challenge WHERE expires_at <= %s OR is_used",
                (now,),
            ).rowcount
            states = conn.execute(
                "DELETE FROM auth_external_state WHERE expires_at <= %s", (now,)
            ).rowcount
        counts = {
            "refresh_tokens": tokens,
            "two_factor_challenges": challenges,
            "external_states": states,
        }
        self.logger.info("retention_purge_completed", **counts)
        return counts
