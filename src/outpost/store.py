"""Setup Store: SQLite-backed persistence for setup and user records.

A plain read/upsert/delete contract keyed by user id. Credential columns
hold whatever the caller hands in (ciphertext, by convention of the
orchestrator); the store itself only touches encryption in
:meth:`SetupStore.encrypt_existing`, the one-off migration for rows written
before encryption was enabled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import aiosqlite

from outpost.codec import Codecs
from outpost.models import ProviderTag, ProvisioningStatus, SetupRecord, SetupStep, UserRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS setup_records (
    user_id TEXT PRIMARY KEY,
    provider TEXT NOT NULL DEFAULT 'orgo',
    sandbox_id TEXT,
    sandbox_name TEXT,
    sandbox_url TEXT,
    project_id TEXT,
    project_name TEXT,
    control_api_key TEXT,
    llm_api_key TEXT,
    llm_provider TEXT,
    llm_model TEXT,
    telegram_bot_token TEXT,
    telegram_user_id TEXT,
    gateway_token TEXT,
    ssh_host TEXT,
    ssh_port INTEGER NOT NULL DEFAULT 22,
    ssh_username TEXT,
    ssh_private_key TEXT,
    runtime_version TEXT,
    vm_created INTEGER NOT NULL DEFAULT 0,
    runtime_installed INTEGER NOT NULL DEFAULT 0,
    telegram_configured INTEGER NOT NULL DEFAULT 0,
    gateway_started INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    failed_step TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    email TEXT,
    created_at TEXT NOT NULL
);
"""

# Columns copied 1:1 between SetupRecord and setup_records.
_RECORD_COLUMNS = (
    "provider",
    "sandbox_id",
    "sandbox_name",
    "sandbox_url",
    "project_id",
    "project_name",
    "control_api_key",
    "llm_api_key",
    "llm_provider",
    "llm_model",
    "telegram_bot_token",
    "telegram_user_id",
    "gateway_token",
    "ssh_host",
    "ssh_port",
    "ssh_username",
    "ssh_private_key",
    "runtime_version",
)

_STATUS_COLUMNS = ("vm_created", "runtime_installed", "telegram_configured", "gateway_started")

# Credential columns encrypted with the secrets codec.
SENSITIVE_COLUMNS = (
    "control_api_key",
    "llm_api_key",
    "telegram_bot_token",
    "gateway_token",
    "ssh_private_key",
)

_ALL_COLUMNS = (
    ("user_id",)
    + _RECORD_COLUMNS
    + _STATUS_COLUMNS
    + ("last_error", "failed_step", "created_at", "updated_at")
)


@dataclass
class MigrationReport:
    updated: int = 0
    skipped: int = 0


class SetupStore:
    """SQLite-backed setup state with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Setup store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized, call initialize() first")
        return self._db

    # ── Setup Records ────────────────────────────────────────────────────

    async def get_record(self, user_id: str) -> SetupRecord | None:
        cursor = await self.db.execute("SELECT * FROM setup_records WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def upsert_record(self, record: SetupRecord) -> SetupRecord:
        """Insert or fully replace the record for ``record.user_id``."""
        record.updated_at = datetime.now(timezone.utc)
        values = self._record_to_row(record)
        placeholders = ", ".join("?" for _ in _ALL_COLUMNS)
        updates = ", ".join(
            f"{col} = excluded.{col}" for col in _ALL_COLUMNS if col not in ("user_id", "created_at")
        )
        await self.db.execute(
            f"INSERT INTO setup_records ({', '.join(_ALL_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(user_id) DO UPDATE SET {updates}",
            values,
        )
        await self.db.commit()
        return record

    async def delete_record(self, user_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM setup_records WHERE user_id = ?", (user_id,))
        await self.db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted setup record for user %s", user_id)
        return deleted

    # ── Users ────────────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> UserRecord | None:
        cursor = await self.db.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return UserRecord(
            user_id=row["user_id"],
            email=row["email"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def upsert_user(self, user: UserRecord) -> UserRecord:
        await self.db.execute(
            "INSERT INTO users (user_id, email, created_at) VALUES (?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET email = excluded.email",
            (user.user_id, user.email, user.created_at.isoformat()),
        )
        await self.db.commit()
        return user

    async def delete_user(self, user_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
        await self.db.commit()
        return cursor.rowcount > 0

    # ── Encryption Migration ─────────────────────────────────────────────

    async def encrypt_existing(self, codecs: Codecs) -> MigrationReport:
        """Encrypt every sensitive value still stored as plaintext.

        Values that already carry the codec marker are left untouched, so a
        second run over the same data performs no writes.
        """
        report = MigrationReport()

        cursor = await self.db.execute(
            f"SELECT user_id, {', '.join(SENSITIVE_COLUMNS)} FROM setup_records"
        )
        for row in await cursor.fetchall():
            changes = {
                col: codecs.secrets.encrypt(row[col])
                for col in SENSITIVE_COLUMNS
                if row[col] and not codecs.secrets.is_encrypted(row[col])
            }
            if not changes:
                report.skipped += 1
                continue
            assignments = ", ".join(f"{col} = ?" for col in changes)
            await self.db.execute(
                f"UPDATE setup_records SET {assignments} WHERE user_id = ?",
                (*changes.values(), row["user_id"]),
            )
            report.updated += 1
            logger.info("Encrypted %s for user %s", ", ".join(changes), row["user_id"])

        cursor = await self.db.execute("SELECT user_id, email FROM users")
        for row in await cursor.fetchall():
            if not row["email"] or codecs.user_data.is_encrypted(row["email"]):
                report.skipped += 1
                continue
            await self.db.execute(
                "UPDATE users SET email = ? WHERE user_id = ?",
                (codecs.user_data.encrypt(row["email"]), row["user_id"]),
            )
            report.updated += 1
            logger.info("Encrypted email for user %s", row["user_id"])

        await self.db.commit()
        logger.info(
            "Encryption migration complete: %d updated, %d skipped", report.updated, report.skipped
        )
        return report

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _record_to_row(record: SetupRecord) -> tuple:
        status = record.status
        return (
            record.user_id,
            *(
                record.provider.value if col == "provider" else getattr(record, col)
                for col in _RECORD_COLUMNS
            ),
            *(int(getattr(status, col)) for col in _STATUS_COLUMNS),
            status.last_error,
            status.failed_step.value if status.failed_step else None,
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> SetupRecord:
        """Convert a database row to a SetupRecord."""
        fields = {col: row[col] for col in _RECORD_COLUMNS}
        fields["provider"] = ProviderTag(row["provider"])
        return SetupRecord(
            user_id=row["user_id"],
            status=ProvisioningStatus(
                **{col: bool(row[col]) for col in _STATUS_COLUMNS},
                last_error=row["last_error"],
                failed_step=SetupStep(row["failed_step"]) if row["failed_step"] else None,
            ),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            **fields,
        )
