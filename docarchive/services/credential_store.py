"""Durable records for identities, roles, sessions, reset requests and audit events."""

import json
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence
from uuid import UUID

import asyncpg
import structlog

from docarchive.database import get_pool
from docarchive.models.user import (
    Identity,
    PasswordResetRequest,
    Role,
    SecurityEvent,
    SecurityEventType,
    UserSession,
)
from docarchive.services.errors import ConstraintViolation

logger = structlog.get_logger(__name__)

USER_COLUMNS = """
    id, email, username, password_hash, first_name, last_name, date_of_birth,
    phone_number, is_active, is_deleted, created_at, updated_at, last_login_at
"""

SESSION_COLUMNS = """
    id, user_id, refresh_token_hash, created_at, expires_at, device_info,
    ip_address, is_revoked
"""

RESET_COLUMNS = "id, user_id, token_hash, created_at, expires_at, is_used"

EVENT_COLUMNS = """
    id, event_type, user_id, user_email, ip_address, user_agent, success,
    details, timestamp
"""


class CredentialStore(Protocol):
    """Storage operations the credential lifecycle engine relies on."""

    async def get_identity(self, user_id: UUID) -> Optional[Identity]: ...

    async def get_identity_by_login(self, email_or_username: str) -> Optional[Identity]: ...

    async def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    async def email_exists(self, email: str) -> bool: ...

    async def username_exists(self, username: str) -> bool: ...

    async def get_role_by_name(self, name: str) -> Optional[Role]: ...

    async def create_identity(self, identity: Identity, role_ids: Sequence[UUID]) -> Identity: ...

    async def change_password(self, user_id: UUID, password_hash: str) -> int: ...

    async def get_role_names(self, user_id: UUID) -> list[str]: ...

    async def get_permission_names(self, user_id: UUID) -> list[str]: ...

    async def open_session(self, session: UserSession, last_login_at: datetime) -> None: ...

    async def list_active_sessions(self, user_id: UUID, now: datetime) -> list[UserSession]: ...

    async def list_all_active_sessions(self, now: datetime) -> list[UserSession]: ...

    async def rotate_session(self, old_session_id: UUID, replacement: UserSession) -> bool: ...

    async def revoke_session(self, session_id: UUID) -> bool: ...

    async def revoke_all_sessions(self, user_id: UUID) -> int: ...

    async def replace_reset_request(self, request: PasswordResetRequest) -> int: ...

    async def list_open_reset_requests(self, now: datetime) -> list[PasswordResetRequest]: ...

    async def complete_password_reset(
        self, request_id: UUID, user_id: UUID, password_hash: str
    ) -> Optional[int]: ...

    async def insert_security_event(self, event: SecurityEvent) -> None: ...

    async def list_security_events(
        self,
        *,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[UUID] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SecurityEvent]: ...

    async def count_security_events(
        self,
        *,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[UUID] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> int: ...


def _affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command status ("UPDATE 3")."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _identity_from_row(row: Any) -> Identity:
    return Identity(
        id=row["id"],
        email=row["email"],
        username=row["username"],
        password_hash=row["password_hash"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        date_of_birth=row["date_of_birth"],
        phone_number=row["phone_number"],
        is_active=row["is_active"],
        is_deleted=row["is_deleted"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row["last_login_at"],
    )


def _session_from_row(row: Any) -> UserSession:
    return UserSession(
        id=row["id"],
        user_id=row["user_id"],
        refresh_token_hash=row["refresh_token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        device_info=row["device_info"],
        ip_address=row["ip_address"],
        is_revoked=row["is_revoked"],
    )


def _reset_from_row(row: Any) -> PasswordResetRequest:
    return PasswordResetRequest(
        id=row["id"],
        user_id=row["user_id"],
        token_hash=row["token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        is_used=row["is_used"],
    )


def _event_from_row(row: Any) -> SecurityEvent:
    details = row["details"]
    if isinstance(details, str):
        details = json.loads(details)
    return SecurityEvent(
        id=row["id"],
        event_type=SecurityEventType(row["event_type"]),
        user_id=row["user_id"],
        user_email=row["user_email"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        success=row["success"],
        details=details or {},
        timestamp=row["timestamp"],
    )


def _event_filters(
    event_type: Optional[SecurityEventType],
    user_id: Optional[UUID],
    from_date: Optional[datetime],
    to_date: Optional[datetime],
) -> tuple[str, list]:
    """Build a WHERE clause and its parameters for audit trail queries."""
    clauses = []
    params: list = []

    if event_type is not None:
        params.append(event_type.value)
        clauses.append(f"event_type = ${len(params)}")
    if user_id is not None:
        params.append(user_id)
        clauses.append(f"user_id = ${len(params)}")
    if from_date is not None:
        params.append(from_date)
        clauses.append(f"timestamp >= ${len(params)}")
    if to_date is not None:
        params.append(to_date)
        clauses.append(f"timestamp <= ${len(params)}")

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class PostgresCredentialStore:
    """asyncpg implementation of CredentialStore."""

    # -- identities ---------------------------------------------------------

    async def get_identity(self, user_id: UUID) -> Optional[Identity]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = $1",
                user_id,
            )

        return _identity_from_row(row) if row is not None else None

    async def get_identity_by_login(self, email_or_username: str) -> Optional[Identity]:
        """Look up an identity by email or username, preferring an email match."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE email = $1 OR username = $1
                ORDER BY (email = $1) DESC
                LIMIT 1
                """,
                email_or_username,
            )

        return _identity_from_row(row) if row is not None else None

    async def get_identity_by_email(self, email: str) -> Optional[Identity]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE email = $1",
                email,
            )

        return _identity_from_row(row) if row is not None else None

    async def email_exists(self, email: str) -> bool:
        pool = await get_pool()

        async with pool.acquire() as conn:
            return bool(
                await conn.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM users WHERE email = $1)", email
                )
            )

    async def username_exists(self, username: str) -> bool:
        pool = await get_pool()

        async with pool.acquire() as conn:
            return bool(
                await conn.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM users WHERE username = $1)", username
                )
            )

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, name, description FROM roles WHERE name = $1",
                name,
            )

        if row is None:
            return None
        return Role(id=row["id"], name=row["name"], description=row["description"])

    async def create_identity(self, identity: Identity, role_ids: Sequence[UUID]) -> Identity:
        """Insert the identity and its role assignments in one transaction.

        Raises:
            ConstraintViolation: If the email or username is already taken
        """
        pool = await get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO users (
                            id, email, username, password_hash, first_name, last_name,
                            date_of_birth, phone_number, is_active, is_deleted, created_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        """,
                        identity.id,
                        identity.email,
                        identity.username,
                        identity.password_hash,
                        identity.first_name,
                        identity.last_name,
                        identity.date_of_birth,
                        identity.phone_number,
                        identity.is_active,
                        identity.is_deleted,
                        identity.created_at,
                    )
                    await conn.executemany(
                        "INSERT INTO user_roles (user_id, role_id) VALUES ($1, $2)",
                        [(identity.id, role_id) for role_id in role_ids],
                    )
        except asyncpg.UniqueViolationError as e:
            raise ConstraintViolation(
                "Email or username already registered",
                {"constraint": e.constraint_name},
            ) from e

        logger.info("identity_created", user_id=str(identity.id), roles=len(role_ids))
        return identity

    async def change_password(self, user_id: UUID, password_hash: str) -> int:
        """Store a new password hash and revoke every live session in one transaction.

        Returns the number of sessions revoked.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._set_password(conn, user_id, password_hash)
                return await self._revoke_all(conn, user_id)

    @staticmethod
    async def _set_password(conn: Any, user_id: UUID, password_hash: str) -> None:
        await conn.execute(
            """
            UPDATE users
            SET password_hash = $1, updated_at = NOW()
            WHERE id = $2
            """,
            password_hash,
            user_id,
        )

    async def get_role_names(self, user_id: UUID) -> list[str]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT r.name
                FROM user_roles ur
                JOIN roles r ON r.id = ur.role_id
                WHERE ur.user_id = $1
                ORDER BY r.name
                """,
                user_id,
            )

        return [row["name"] for row in rows]

    async def get_permission_names(self, user_id: UUID) -> list[str]:
        """Deduplicated union of the permissions of every role the user holds."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT p.name
                FROM user_roles ur
                JOIN role_permissions rp ON rp.role_id = ur.role_id
                JOIN permissions p ON p.id = rp.permission_id
                WHERE ur.user_id = $1
                ORDER BY p.name
                """,
                user_id,
            )

        return [row["name"] for row in rows]

    # -- sessions -----------------------------------------------------------

    async def open_session(self, session: UserSession, last_login_at: datetime) -> None:
        """Persist a login session and stamp the identity's last login together."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._insert_session(conn, session)
                await conn.execute(
                    "UPDATE users SET last_login_at = $1 WHERE id = $2",
                    last_login_at,
                    session.user_id,
                )

    @staticmethod
    async def _insert_session(conn: Any, session: UserSession) -> None:
        await conn.execute(
            """
            INSERT INTO user_sessions (
                id, user_id, refresh_token_hash, created_at, expires_at,
                device_info, ip_address, is_revoked
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            session.id,
            session.user_id,
            session.refresh_token_hash,
            session.created_at,
            session.expires_at,
            session.device_info,
            session.ip_address,
            session.is_revoked,
        )

    async def list_active_sessions(self, user_id: UUID, now: datetime) -> list[UserSession]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM user_sessions
                WHERE user_id = $1 AND is_revoked = FALSE AND expires_at > $2
                """,
                user_id,
                now,
            )

        return [_session_from_row(row) for row in rows]

    async def list_all_active_sessions(self, now: datetime) -> list[UserSession]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM user_sessions
                WHERE is_revoked = FALSE AND expires_at > $1
                """,
                now,
            )

        return [_session_from_row(row) for row in rows]

    async def rotate_session(self, old_session_id: UUID, replacement: UserSession) -> bool:
        """Revoke the old session and insert its replacement atomically.

        The revoke is a compare-and-set on ``is_revoked``; when another
        caller already revoked the row nothing is inserted and False is
        returned.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE user_sessions
                    SET is_revoked = TRUE
                    WHERE id = $1 AND is_revoked = FALSE
                    """,
                    old_session_id,
                )
                if _affected_rows(result) != 1:
                    return False
                await self._insert_session(conn, replacement)

        return True

    async def revoke_session(self, session_id: UUID) -> bool:
        """Revoke one session. Returns True only if this call flipped the flag."""
        pool = await get_pool()

        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE user_sessions
                SET is_revoked = TRUE
                WHERE id = $1 AND is_revoked = FALSE
                """,
                session_id,
            )

        return _affected_rows(result) == 1

    async def revoke_all_sessions(self, user_id: UUID) -> int:
        pool = await get_pool()

        async with pool.acquire() as conn:
            return await self._revoke_all(conn, user_id)

    @staticmethod
    async def _revoke_all(conn: Any, user_id: UUID) -> int:
        result = await conn.execute(
            """
            UPDATE user_sessions
            SET is_revoked = TRUE
            WHERE user_id = $1 AND is_revoked = FALSE
            """,
            user_id,
        )
        return _affected_rows(result)

    # -- password reset -----------------------------------------------------

    async def replace_reset_request(self, request: PasswordResetRequest) -> int:
        """Mark the user's open reset requests used and insert ``request``.

        Both statements share a transaction. Returns how many open requests
        were superseded.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE password_reset_requests
                    SET is_used = TRUE
                    WHERE user_id = $1 AND is_used = FALSE
                    """,
                    request.user_id,
                )
                await conn.execute(
                    """
                    INSERT INTO password_reset_requests (
                        id, user_id, token_hash, created_at, expires_at, is_used
                    )
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    request.id,
                    request.user_id,
                    request.token_hash,
                    request.created_at,
                    request.expires_at,
                    request.is_used,
                )

        return _affected_rows(result)

    async def list_open_reset_requests(self, now: datetime) -> list[PasswordResetRequest]:
        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {RESET_COLUMNS}
                FROM password_reset_requests
                WHERE is_used = FALSE AND expires_at > $1
                """,
                now,
            )

        return [_reset_from_row(row) for row in rows]

    async def complete_password_reset(
        self, request_id: UUID, user_id: UUID, password_hash: str
    ) -> Optional[int]:
        """Consume a reset request, store the new hash and revoke all sessions.

        The consume is a compare-and-set on ``is_used``. When another caller
        already used the request nothing else is written and None is
        returned; otherwise the number of revoked sessions.
        """
        pool = await get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE password_reset_requests
                    SET is_used = TRUE
                    WHERE id = $1 AND is_used = FALSE
                    """,
                    request_id,
                )
                if _affected_rows(result) != 1:
                    return None
                await self._set_password(conn, user_id, password_hash)
                return await self._revoke_all(conn, user_id)

    # -- audit trail --------------------------------------------------------

    async def insert_security_event(self, event: SecurityEvent) -> None:
        pool = await get_pool()

        async with pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO security_audit_logs ({EVENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                event.id,
                event.event_type.value,
                event.user_id,
                event.user_email,
                event.ip_address,
                event.user_agent,
                event.success,
                json.dumps(event.details) if event.details else None,
                event.timestamp,
            )

    async def list_security_events(
        self,
        *,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[UUID] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SecurityEvent]:
        where, params = _event_filters(event_type, user_id, from_date, to_date)
        params.extend([limit, offset])
        query = f"""
            SELECT {EVENT_COLUMNS}
            FROM security_audit_logs
            {where}
            ORDER BY timestamp DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """

        pool = await get_pool()

        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [_event_from_row(row) for row in rows]

    async def count_security_events(
        self,
        *,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[UUID] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> int:
        where, params = _event_filters(event_type, user_id, from_date, to_date)

        pool = await get_pool()

        async with pool.acquire() as conn:
            count = await conn.fetchval(
                f"SELECT COUNT(*) FROM security_audit_logs {where}", *params
            )

        return count or 0
