from __future__ import annotations

import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from ipaddress import ip_address
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    AuditLogEntry,
    EmailVerificationToken,
    GatewayPrincipal,
    GatewayToken,
    OAuthProviderLink,
    PasswordResetToken,
    Session,
    Tenant,
    User,
)

REQUIRED_TABLES = (
    "tenants",
    "users",
    "user_oauth_providers",
    "user_sessions",
    "email_verification_tokens",
    "password_reset_tokens",
    "gateway_tokens",
    "audit_log",
)

_USER_COLUMNS = (
    "id",
    "tenant_id",
    "email",
    "password_hash",
    "email_verified",
    "email_verified_at",
    "password_changed_at",
    "username",
    "display_name",
    "avatar_url",
    "locale",
    "timezone",
    "country",
    "role",
    "permissions",
    "status",
    "two_factor_enabled",
    "last_login_at",
    "last_login_ip",
    "login_count",
    "metadata",
    "created_at",
    "updated_at",
    "deleted_at",
)
_SESSION_COLUMNS = (
    "id",
    "user_id",
    "access_token_hash",
    "access_token_expires_at",
    "refresh_token_hash",
    "refresh_token_expires_at",
    "user_agent",
    "ip_address",
    "device_type",
    "device_name",
    "is_active",
    "revoked_at",
    "revoked_reason",
    "last_activity_at",
    "metadata",
    "created_at",
    "updated_at",
)


def _prefixed(columns: Tuple[str, ...], alias: str, label: str) -> str:
    return ", ".join(f"{alias}.{col} AS {label}{col}" for col in columns)


def _inet(value: Optional[str]) -> Optional[str]:
    """Return ``value`` if it parses as an IP address, else None (INET columns)."""
    if not value:
        return None
    try:
        return str(ip_address(value))
    except ValueError:
        return None


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _unprefix(row: Dict[str, Any], label: str) -> Dict[str, Any]:
    return {key[len(label):]: value for key, value in row.items() if key.startswith(label)}


def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
    return Tenant(
        id=str(row["id"]),
        name=row["name"],
        slug=row["slug"],
        contact_email=row["contact_email"],
        plan_type=row["plan_type"],
        plan_status=row["plan_status"],
        display_name=row.get("display_name"),
        limits=row.get("limits") or {},
        settings=row.get("settings") or {},
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        email=row["email"],
        password_hash=row.get("password_hash"),
        email_verified=bool(row.get("email_verified")),
        email_verified_at=row.get("email_verified_at"),
        password_changed_at=row.get("password_changed_at"),
        username=row.get("username"),
        display_name=row.get("display_name"),
        avatar_url=row.get("avatar_url"),
        locale=row.get("locale") or "en",
        timezone=row.get("timezone") or "UTC",
        country=row.get("country"),
        role=row["role"],
        permissions=list(row.get("permissions") or []),
        status=row["status"],
        two_factor_enabled=bool(row.get("two_factor_enabled")),
        last_login_at=row.get("last_login_at"),
        last_login_ip=_str_or_none(row.get("last_login_ip")),
        login_count=row.get("login_count") or 0,
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row.get("deleted_at"),
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        access_token_hash=row["access_token_hash"],
        access_token_expires_at=row["access_token_expires_at"],
        refresh_token_hash=row.get("refresh_token_hash"),
        refresh_token_expires_at=row.get("refresh_token_expires_at"),
        user_agent=row.get("user_agent"),
        ip_address=_str_or_none(row.get("ip_address")),
        device_type=row.get("device_type"),
        device_name=row.get("device_name"),
        is_active=bool(row["is_active"]),
        revoked_at=row.get("revoked_at"),
        revoked_reason=row.get("revoked_reason"),
        last_activity_at=row["last_activity_at"],
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _link_from_row(row: Dict[str, Any]) -> OAuthProviderLink:
    return OAuthProviderLink(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=row["provider"],
        provider_user_id=row["provider_user_id"],
        provider_username=row.get("provider_username"),
        provider_email=row.get("provider_email"),
        access_token=row.get("access_token"),
        refresh_token=row.get("refresh_token"),
        token_expires_at=row.get("token_expires_at"),
        scope=list(row.get("scope") or []),
        profile_data=row.get("profile_data") or {},
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_used_at=row.get("last_used_at"),
    )


def _audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=str(row["id"]),
        action=row["action"],
        tenant_id=_str_or_none(row.get("tenant_id")),
        user_id=_str_or_none(row.get("user_id")),
        resource_type=row.get("resource_type"),
        resource_id=row.get("resource_id"),
        changes=row.get("changes"),
        metadata=row.get("metadata") or {},
        ip_address=_str_or_none(row.get("ip_address")),
        user_agent=row.get("user_agent"),
        status=row["status"],
        error_message=row.get("error_message"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool.

    Calls made inside ``transaction()`` share the transaction's connection;
    everything else runs on a pooled connection that commits on exit.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar = ContextVar(f"tenantauth_tx_{id(self)}", default=None)
        self._verify_required_schema()

    # -- lifecycle -------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        bound = self._tx_conn.get()
        if bound is not None:
            yield bound
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._tx_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield
                finally:
                    self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install sql/schema.sql.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- tenants ---------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        slug: str,
        contact_email: str,
        *,
        plan_type: str = "free",
        plan_status: str = "trial",
    ) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenants (name, slug, contact_email, plan_type, plan_status)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, slug, contact_email, plan_type, plan_status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
        except errors.CheckViolation:
            raise ConstraintViolation("invalid plan", {"field": "plan_type"})
        return _tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE id = %s AND deleted_at IS NULL", (tenant_id,)
            ).fetchone()
        return _tenant_from_row(row) if row else None

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        tenant_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        role: str = "member",
        display_name: Optional[str] = None,
        username: Optional[str] = None,
        locale: str = "en",
        country: Optional[str] = None,
        email_verified: bool = False,
        metadata: Optional[dict] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (
                        tenant_id, email, password_hash, password_changed_at, role,
                        display_name, username, locale, country, email_verified,
                        email_verified_at, metadata
                    )
                    VALUES (
                        %s, %s, %s, CASE WHEN %s THEN now() END, %s,
                        %s, %s, %s, %s, %s,
                        CASE WHEN %s THEN now() END, %s
                    )
                    RETURNING *
                    """,
                    (
                        tenant_id,
                        email.lower(),
                        password_hash,
                        password_hash is not None,
                        role,
                        display_name,
                        username,
                        locale,
                        country,
                        email_verified,
                        email_verified,
                        json.dumps(metadata or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"field": "tenant_id"})
        except errors.CheckViolation:
            raise ConstraintViolation("invalid role", {"field": "role"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s AND deleted_at IS NULL", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE LOWER(email) = LOWER(%s) AND deleted_at IS NULL",
                (email,),
            ).fetchone()
        return _user_from_row(row) if row else None

    def record_login(self, user_id: str, ip_address: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET last_login_at = now(), last_login_ip = %s, login_count = login_count + 1
                WHERE id = %s
                """,
                (_inet(ip_address), user_id),
            )

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = %s, password_changed_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    def mark_email_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET email_verified = true, email_verified_at = now() WHERE id = %s",
                (user_id,),
            )

    def delete_user(self, user_id: str) -> None:
        """Hard-delete a user; FK cascades remove sessions, links and tokens."""
        with self._connect() as conn:
            conn.execute("DELETE FROM users WHERE id = %s", (user_id,))

    # -- oauth provider links ---------------------------------------------

    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthProviderLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_oauth_providers WHERE provider = %s AND provider_user_id = %s",
                (provider, provider_user_id),
            ).fetchone()
        return _link_from_row(row) if row else None

    def list_oauth_links(self, user_id: str) -> List[OAuthProviderLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_oauth_providers WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_link_from_row(row) for row in rows]

    def create_oauth_link(
        self,
        user_id: str,
        provider: str,
        provider_user_id: str,
        *,
        provider_username: Optional[str] = None,
        provider_email: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        profile_data: Optional[dict] = None,
    ) -> OAuthProviderLink:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_oauth_providers (
                        user_id, provider, provider_user_id, provider_username, provider_email,
                        access_token, refresh_token, token_expires_at, profile_data, last_used_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                    RETURNING *
                    """,
                    (
                        user_id,
                        provider,
                        provider_user_id,
                        provider_username,
                        provider_email,
                        access_token,
                        refresh_token,
                        token_expires_at,
                        json.dumps(profile_data or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider account already linked", {"field": "provider_user_id"}
            )
        except errors.CheckViolation:
            raise ConstraintViolation("unsupported provider", {"field": "provider"})
        return _link_from_row(row)

    def touch_oauth_link(self, link_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_oauth_providers SET last_used_at = now() WHERE id = %s", (link_id,)
            )

    # -- sessions ----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_sessions (
                        user_id, access_token_hash, access_token_expires_at,
                        refresh_token_hash, refresh_token_expires_at,
                        user_agent, ip_address, device_type
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        access_token_hash,
                        access_token_expires_at,
                        refresh_token_hash,
                        refresh_token_expires_at,
                        user_agent,
                        _inet(ip_address),
                        device_type,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "access_token_hash"})
        return _session_from_row(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def validate_access_session(
        self, access_token_hash: str, now: datetime
    ) -> Optional[Tuple[Session, User]]:
        # One round trip: liveness check, activity touch and user fetch together
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE user_sessions s
                SET last_activity_at = %s
                FROM users u
                WHERE u.id = s.user_id
                  AND s.access_token_hash = %s
                  AND s.is_active = true
                  AND s.access_token_expires_at > %s
                  AND u.deleted_at IS NULL
                RETURNING {_prefixed(_SESSION_COLUMNS, "s", "s_")}, {_prefixed(_USER_COLUMNS, "u", "u_")}
                """,
                (now, access_token_hash, now),
            ).fetchone()
        if not row:
            return None
        return _session_from_row(_unprefix(row, "s_")), _user_from_row(_unprefix(row, "u_"))

    def get_active_session_by_refresh_hash(
        self, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE refresh_token_hash = %s AND is_active = true AND refresh_token_expires_at > %s
                """,
                (refresh_token_hash, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        expected_refresh_hash: str,
        access_token_hash: str,
        access_token_expires_at: datetime,
        refresh_token_hash: str,
        refresh_token_expires_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions
                SET access_token_hash = %s,
                    access_token_expires_at = %s,
                    refresh_token_hash = %s,
                    refresh_token_expires_at = %s,
                    last_activity_at = now()
                WHERE id = %s AND refresh_token_hash = %s AND is_active = true
                """,
                (
                    access_token_hash,
                    access_token_expires_at,
                    refresh_token_hash,
                    refresh_token_expires_at,
                    session_id,
                    expected_refresh_hash,
                ),
            )
            return cur.rowcount == 1

    def revoke_session_by_access_hash(self, access_token_hash: str, reason: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions
                SET is_active = false, revoked_at = now(), revoked_reason = %s
                WHERE access_token_hash = %s AND is_active = true
                """,
                (reason, access_token_hash),
            )
            return cur.rowcount

    def revoke_user_sessions(self, user_id: str, reason: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions
                SET is_active = false, revoked_at = now(), revoked_reason = %s
                WHERE user_id = %s AND is_active = true
                """,
                (reason, user_id),
            )
            return cur.rowcount

    # -- one-time tokens ---------------------------------------------------

    def create_email_verification_token(
        self, user_id: str, token: str, email: str, expires_at: datetime
    ) -> EmailVerificationToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO email_verification_tokens (user_id, token, email, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, token, email, expires_at),
            ).fetchone()
        return EmailVerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            email=row["email"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row["created_at"],
        )

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_verification_tokens
                SET used_at = %s
                WHERE token = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        if not row:
            return None
        return EmailVerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            email=row["email"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row["created_at"],
        )

    def create_password_reset_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordResetToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset_tokens (user_id, token, expires_at, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, token, expires_at, _inet(ip_address), user_agent),
            ).fetchone()
        return self._reset_token_from_row(row)

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_tokens
                SET used_at = %s
                WHERE token = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return self._reset_token_from_row(row) if row else None

    @staticmethod
    def _reset_token_from_row(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            ip_address=_str_or_none(row.get("ip_address")),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # -- gateway tokens ----------------------------------------------------

    def create_gateway_token(
        self, token: str, user_id: str, tenant_id: str, expires_at: datetime
    ) -> GatewayToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO gateway_tokens (token, user_id, tenant_id, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token, user_id, tenant_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("gateway token collision", {"field": "token"})
        return GatewayToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            created_at=row["created_at"],
        )

    def find_gateway_principal(self, token: str, now: datetime) -> Optional[GatewayPrincipal]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT g.user_id, g.tenant_id, u.email
                FROM gateway_tokens g
                JOIN users u ON u.id = g.user_id
                WHERE g.token = %s
                  AND g.expires_at > %s
                  AND g.revoked_at IS NULL
                  AND u.deleted_at IS NULL
                """,
                (token, now),
            ).fetchone()
        if not row:
            return None
        return GatewayPrincipal(
            user_id=str(row["user_id"]), tenant_id=str(row["tenant_id"]), email=row["email"]
        )

    def revoke_gateway_token(self, token: str, *, user_id: Optional[str] = None) -> bool:
        query = "UPDATE gateway_tokens SET revoked_at = now() WHERE token = %s AND revoked_at IS NULL"
        params: List[Any] = [token]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount == 1

    # -- audit -------------------------------------------------------------

    def insert_audit_log(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, tenant_id, user_id, action, resource_type, resource_id, changes,
                    metadata, ip_address, user_agent, status, error_message, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.tenant_id,
                    entry.user_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    json.dumps(entry.changes) if entry.changes is not None else None,
                    json.dumps(entry.metadata or {}),
                    _inet(entry.ip_address),
                    entry.user_agent,
                    entry.status,
                    entry.error_message,
                    entry.created_at,
                ),
            )

    def list_audit_logs(
        self,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, op, value in (
            ("tenant_id", "=", tenant_id),
            ("user_id", "=", user_id),
            ("action", "=", action),
            ("created_at", ">=", start_date),
            ("created_at", "<=", end_date),
        ):
            if value is not None:
                clauses.append(f"{column} {op} %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [_audit_from_row(row) for row in rows]

    def count_audit_events(self, action: str, *, ip_address: str, since: datetime) -> int:
        inet = _inet(ip_address)
        if inet is None:
            return 0
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM audit_log
                WHERE action = %s AND ip_address = %s AND created_at > %s
                """,
                (action, inet, since),
            ).fetchone()
        return int(row["count"]) if row else 0
