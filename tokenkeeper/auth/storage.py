"""
Encrypted credential storage.

Stores one OAuth credential per (provider, account) pair. Access and refresh
tokens are encrypted at rest with AES-256-GCM; every mutation is a single
INSERT/UPDATE/DELETE statement so a concurrent reader never observes a
half-written record.
"""

import logging
import os
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

import aiosqlite

from tokenkeeper.auth.encryption import Encryptor, resolve_encryption_key
from tokenkeeper.auth.errors import TokenNotFound

if TYPE_CHECKING:
    from tokenkeeper.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class DecryptedCredential:
    """Plaintext credential held in memory only, never written as-is."""

    provider: str
    account_id: str
    access_token: str = field(repr=False)
    refresh_token: str = field(default="", repr=False)
    token_type: str = "bearer"
    expires_at: Optional[int] = None
    scope: str = ""

    def is_expiring_soon(self, margin_seconds: float) -> bool:
        if self.expires_at is None:
            return False
        return time.time() + margin_seconds >= self.expires_at


@dataclass
class CredentialRecord:
    """Stored credential metadata. Carries no secrets."""

    provider: str
    account_id: str
    token_type: str
    expires_at: Optional[int]
    scope: str
    has_refresh_token: bool
    created_at: int
    updated_at: int
    last_used_at: Optional[int] = None
    last_refreshed_at: Optional[int] = None

    def is_expiring_soon(self, margin_seconds: float) -> bool:
        """Expired, or expiring within the given margin. No expiry means never."""
        if self.expires_at is None:
            return False
        return time.time() + margin_seconds >= self.expires_at

    def is_expired(self) -> bool:
        return self.is_expiring_soon(0)


class CredentialStore:
    """Securely store and manage OAuth credentials"""

    def __init__(
        self,
        db_path: Union[str, Path],
        encryption_key: Optional[Union[str, bytes]] = None,
        key_file: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize credential storage.

        Args:
            db_path: Path to SQLite database file
            encryption_key: Base64-encoded (or raw) 32-byte key. Falls back to
                TOKEN_ENCRYPTION_KEY, then to the key file.
            key_file: Key file to read, or create if missing
        """
        self.db_path = str(db_path)
        self.encryptor = Encryptor(resolve_encryption_key(encryption_key, key_file))
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CredentialStore":
        return cls(
            db_path=settings.token_storage_db,
            encryption_key=settings.token_encryption_key,
            key_file=settings.token_key_file,
        )

    async def initialize(self) -> None:
        """Initialize database schema"""
        if self._initialized:
            return

        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        if Path(self.db_path).exists():
            os.chmod(self.db_path, 0o600)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_credentials (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL DEFAULT '',
                    token_type TEXT NOT NULL DEFAULT 'bearer',
                    expires_at INTEGER,
                    scope TEXT NOT NULL DEFAULT '',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    last_used_at INTEGER,
                    last_refreshed_at INTEGER,
                    UNIQUE (provider, account_id)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    category TEXT NOT NULL,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT,
                    hostname TEXT
                )
                """
            )

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_category_timestamp "
                "ON audit_logs(category, timestamp)"
            )

            await db.commit()

        os.chmod(self.db_path, 0o600)

        self._initialized = True
        logger.info(f"Initialized credential storage at {self.db_path}")

    async def save_credential(self, credential: DecryptedCredential) -> None:
        """
        Store an encrypted credential, replacing any existing one for the
        same (provider, account) pair.

        Args:
            credential: Plaintext credential to encrypt and persist
        """
        if not self._initialized:
            await self.initialize()

        encrypted_access = self.encryptor.encrypt(credential.access_token)
        encrypted_refresh = self.encryptor.encrypt(credential.refresh_token)
        now = int(time.time())

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO oauth_credentials
                (provider, account_id, access_token, refresh_token, token_type,
                 expires_at, scope, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider, account_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_type = excluded.token_type,
                    expires_at = excluded.expires_at,
                    scope = excluded.scope,
                    updated_at = excluded.updated_at
                """,
                (
                    credential.provider,
                    credential.account_id,
                    encrypted_access,
                    encrypted_refresh,
                    credential.token_type,
                    credential.expires_at,
                    credential.scope,
                    now,
                    now,
                ),
            )
            await db.commit()

        logger.info(
            f"Stored credential for {credential.provider}/{credential.account_id}"
            + (f" (expires at {credential.expires_at})" if credential.expires_at else "")
        )

    async def get_credential(
        self, provider: str, account_id: str
    ) -> Optional[DecryptedCredential]:
        """
        Retrieve and decrypt a credential.

        Returns:
            Decrypted credential, or None if not found

        Raises:
            DecryptionFailed: If a stored secret was tampered with or the key changed
        """
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT provider, account_id, access_token, refresh_token,
                       token_type, expires_at, scope
                FROM oauth_credentials WHERE provider = ? AND account_id = ?
                """,
                (provider, account_id),
            ) as cursor:
                row = await cursor.fetchone()

        if not row:
            logger.debug(f"No credential found for {provider}/{account_id}")
            return None

        return self._decrypt_row(row)

    async def get_latest_credential(
        self, provider: str
    ) -> Optional[DecryptedCredential]:
        """Retrieve the most recently updated credential for a provider."""
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT provider, account_id, access_token, refresh_token,
                       token_type, expires_at, scope
                FROM oauth_credentials WHERE provider = ?
                ORDER BY updated_at DESC, id DESC LIMIT 1
                """,
                (provider,),
            ) as cursor:
                row = await cursor.fetchone()

        if not row:
            return None

        return self._decrypt_row(row)

    def _decrypt_row(self, row) -> DecryptedCredential:
        provider, account_id, enc_access, enc_refresh, token_type, expires_at, scope = (
            row
        )
        try:
            access_token = self.encryptor.decrypt(enc_access)
            refresh_token = self.encryptor.decrypt(enc_refresh)
        except Exception:
            logger.error(f"Failed to decrypt credential for {provider}/{account_id}")
            raise

        return DecryptedCredential(
            provider=provider,
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=token_type,
            expires_at=expires_at,
            scope=scope,
        )

    async def list_credentials(
        self, provider: Optional[str] = None
    ) -> list[CredentialRecord]:
        """
        List stored credentials without decrypting them.

        Args:
            provider: Restrict to one provider (optional)

        Returns:
            Credential metadata, most recently updated first
        """
        if not self._initialized:
            await self.initialize()

        query = """
            SELECT provider, account_id, token_type, expires_at, scope,
                   refresh_token != '' AS has_refresh_token,
                   created_at, updated_at, last_used_at, last_refreshed_at
            FROM oauth_credentials
        """
        params: list = []
        if provider:
            query += " WHERE provider = ?"
            params.append(provider)
        query += " ORDER BY updated_at DESC, id DESC"

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        records = [
            CredentialRecord(
                provider=row[0],
                account_id=row[1],
                token_type=row[2],
                expires_at=row[3],
                scope=row[4],
                has_refresh_token=bool(row[5]),
                created_at=row[6],
                updated_at=row[7],
                last_used_at=row[8],
                last_refreshed_at=row[9],
            )
            for row in rows
        ]
        logger.debug(f"Found {len(records)} stored credential(s)")
        return records

    async def update_after_refresh(
        self,
        provider: str,
        account_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[int],
    ) -> None:
        """
        Rotate a credential after a successful refresh.

        The refresh token is only replaced when a non-empty one is given;
        providers are not required to rotate it.

        Raises:
            TokenNotFound: If the credential was deleted in the meantime
        """
        if not self._initialized:
            await self.initialize()

        now = int(time.time())
        fields = ["access_token = ?", "expires_at = ?", "last_refreshed_at = ?"]
        params: list = [self.encryptor.encrypt(access_token), expires_at, now]

        if refresh_token:
            fields.append("refresh_token = ?")
            params.append(self.encryptor.encrypt(refresh_token))

        fields.append("updated_at = ?")
        params.extend([now, provider, account_id])

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE oauth_credentials
                SET {", ".join(fields)}
                WHERE provider = ? AND account_id = ?
                """,
                params,
            )
            await db.commit()
            updated = cursor.rowcount > 0

        if not updated:
            raise TokenNotFound(provider, account_id)

        logger.info(
            f"Rotated credential for {provider}/{account_id}"
            + (" (new refresh token)" if refresh_token else "")
        )

    async def update_last_used(self, provider: str, account_id: str) -> None:
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE oauth_credentials SET last_used_at = ? "
                "WHERE provider = ? AND account_id = ?",
                (int(time.time()), provider, account_id),
            )
            await db.commit()

    async def delete_credential(self, provider: str, account_id: str) -> bool:
        """
        Delete a stored credential.

        Returns:
            True if a credential was deleted, False if not found
        """
        if not self._initialized:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM oauth_credentials WHERE provider = ? AND account_id = ?",
                (provider, account_id),
            )
            await db.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted credential for {provider}/{account_id}")
        else:
            logger.debug(f"No credential to delete for {provider}/{account_id}")

        return deleted

    async def record_audit(
        self,
        category: str,
        description: str,
        error: Optional[BaseException] = None,
    ) -> None:
        """
        Append an entry to the audit log.

        Args:
            category: Event category (e.g., "oauth_token_refresh")
            description: Human-readable description naming provider and account
            error: Failure cause, or None for success
        """
        if not self._initialized:
            await self.initialize()

        status = "failed" if error is not None else "success"
        error_msg = str(error)[:500] if error is not None else None

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO audit_logs
                (timestamp, category, description, status, error, hostname)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    int(time.time()),
                    category,
                    description,
                    status,
                    error_msg,
                    socket.gethostname(),
                ),
            )
            await db.commit()

    async def get_audit_logs(
        self,
        category: Optional[str] = None,
        since: Optional[int] = None,
        limit: int = 100,
    ) -> list[dict]:
        """
        Retrieve audit logs.

        Args:
            category: Filter by category (optional)
            since: Filter by timestamp (Unix epoch, optional)
            limit: Maximum number of logs to return

        Returns:
            List of audit log entries, newest first
        """
        if not self._initialized:
            await self.initialize()

        query = "SELECT * FROM audit_logs WHERE 1=1"
        params: list = []

        if category:
            query += " AND category = ?"
            params.append(category)

        if since:
            query += " AND timestamp >= ?"
            params.append(since)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        return [dict(row) for row in rows]
