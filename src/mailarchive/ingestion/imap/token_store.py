"""Persistent storage for OAuth credentials.

Rows only ever hold vault ciphertext for the access and refresh tokens; the
store itself never sees plaintext. Each credential belongs to a user row and
is removed together with it through ``ON DELETE CASCADE``. The ``users``
table here is a minimal stand-in for the application's user table so the
ownership contract holds in standalone deployments.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from mailarchive.errors import CredentialNotFoundError


# ---------------------------------------------------------------------------
# Credential model
# ---------------------------------------------------------------------------


class OAuthCredential(BaseModel):
    """Stored OAuth grant for one (user, provider, mailbox address)."""

    id: str = Field(..., description="Credential identifier (uuid4)")
    user_id: str = Field(..., description="Owning user")
    provider: str = Field(..., description="OAuth provider name, e.g. microsoft")
    email: str = Field(..., description="Mailbox address the grant is for")
    access_token: str = Field(..., description="Vault ciphertext of the access token")
    refresh_token: Optional[str] = Field(
        default=None, description="Vault ciphertext of the refresh token"
    )
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _ensure_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:  # type: ignore[override]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def summary(self) -> "CredentialSummary":
        return CredentialSummary(
            id=self.id,
            provider=self.provider,
            email=self.email,
            expires_at=self.expires_at,
            scope=self.scope,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class CredentialSummary(BaseModel):
    """Token-free view of a credential for listings."""

    id: str
    provider: str
    email: str
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# SQLite persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS oauth_tokens (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    email TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TEXT,
    scope TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, provider, email)
);

CREATE INDEX IF NOT EXISTS idx_oauth_tokens_user ON oauth_tokens(user_id);
"""

_COLUMNS = (
    "id, user_id, provider, email, access_token, refresh_token, "
    "expires_at, scope, created_at, updated_at"
)

# Sentinel for update_tokens so callers can keep the stored refresh token.
KEEP = object()


class OAuthTokenStore:
    """SQLite-backed store for encrypted OAuth credentials."""

    def __init__(self, path: Union[Path, str]) -> None:
        """Initialize token store.

        Args:
            path: Path to SQLite database file, or ``":memory:"``
        """
        if str(path) != ":memory:":
            path = Path(path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        if str(path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self._conn.commit()
            self._conn.close()

    def __enter__(self) -> "OAuthTokenStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str, email: Optional[str] = None) -> None:
        """Create the owning user row if it does not exist yet."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO users(id, email, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET email=COALESCE(excluded.email, users.email)
                """,
                (user_id, email, _utcnow().isoformat()),
            )

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; their credentials are removed by cascade."""
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def upsert(
        self,
        *,
        user_id: str,
        provider: str,
        email: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        scope: Optional[str],
    ) -> OAuthCredential:
        """Insert a credential, or replace the tokens of an existing one.

        Re-authorizing the same mailbox keeps the credential id and creation
        time so sync sources referencing it stay valid.
        """
        now = _utcnow().isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                f"""
                INSERT INTO oauth_tokens({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider, email) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=COALESCE(excluded.refresh_token, oauth_tokens.refresh_token),
                    expires_at=excluded.expires_at,
                    scope=excluded.scope,
                    updated_at=excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    provider,
                    email,
                    access_token,
                    refresh_token,
                    _format(expires_at),
                    scope,
                    now,
                    now,
                ),
            )
            row = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM oauth_tokens
                WHERE user_id = ? AND provider = ? AND email = ?
                """,
                (user_id, provider, email),
            ).fetchone()
        if row is None:
            raise CredentialNotFoundError(details={"user_id": user_id, "email": email})
        return _row_to_credential(row)

    def get(self, credential_id: str) -> Optional[OAuthCredential]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM oauth_tokens WHERE id = ?", (credential_id,)
            ).fetchone()
        return _row_to_credential(row) if row else None

    def find(self, *, user_id: str, provider: str, email: str) -> Optional[OAuthCredential]:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM oauth_tokens
                WHERE user_id = ? AND provider = ? AND email = ?
                """,
                (user_id, provider, email),
            ).fetchone()
        return _row_to_credential(row) if row else None

    def list_for_user(self, user_id: str) -> List[OAuthCredential]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM oauth_tokens
                WHERE user_id = ? ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_credential(row) for row in rows]

    def update_tokens(
        self,
        credential_id: str,
        *,
        access_token: str,
        expires_at: Optional[datetime],
        refresh_token: Any = KEEP,
    ) -> Optional[OAuthCredential]:
        """Replace token material after a successful refresh.

        Args:
            credential_id: Credential to update
            access_token: New access token ciphertext
            expires_at: New expiry, or None when the provider gave none
            refresh_token: New refresh token ciphertext, or ``KEEP``

        Returns:
            The updated credential, or None when it no longer exists
        """
        now = _utcnow().isoformat()
        with self._lock, self._conn:
            if refresh_token is KEEP:
                cursor = self._conn.execute(
                    """
                    UPDATE oauth_tokens
                    SET access_token = ?, expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (access_token, _format(expires_at), now, credential_id),
                )
            else:
                cursor = self._conn.execute(
                    """
                    UPDATE oauth_tokens
                    SET access_token = ?, refresh_token = ?, expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (access_token, refresh_token, _format(expires_at), now, credential_id),
                )
        if cursor.rowcount == 0:
            return None
        return self.get(credential_id)

    def delete(self, credential_id: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM oauth_tokens WHERE id = ?", (credential_id,)
            )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _row_to_credential(row: sqlite3.Row) -> OAuthCredential:
    return OAuthCredential(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        email=row["email"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
        scope=row["scope"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


__all__ = [
    "CredentialSummary",
    "KEEP",
    "OAuthCredential",
    "OAuthTokenStore",
]
