"""federation_sync.store

Canonical user store: user records keyed by "acc/<id>" with optimistic
compare-and-set writes.

PostgresUserStore keeps one row per record in the user_record table
(migrations/0001_user_record.sql). Every successful write bumps the
row's version; a write whose expected version no longer matches raises
StaleRecordError. Writes only become visible when the surrounding
transaction() block commits, so a sync pass either lands entirely or not
at all.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

from federation_sync.models import Metadata
from federation_sync.normalize import normalize_name

USER_PREFIX = "acc/"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StaleRecordError(Exception):
    """Raised when a compare-and-set finds a newer version than expected."""


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserRecord:
    """One local user account. version 0 means not stored yet."""

    key: str
    id: str
    first_name: str
    last_name: str
    normalized_first_name: str
    normalized_last_name: str
    date_of_birth: int
    email: str | None = None
    admin: bool = False
    metadata: dict[str, Any] | None = None
    version: int = 0

    @classmethod
    def new(
        cls,
        first_name: str,
        last_name: str,
        date_of_birth: int,
        email: str | None,
        metadata: Metadata | None = None,
    ) -> UserRecord:
        user_id = str(uuid.uuid4())
        return cls(
            key=f"{USER_PREFIX}{user_id}",
            id=user_id,
            first_name=first_name,
            last_name=last_name,
            normalized_first_name=normalize_name(first_name) or "",
            normalized_last_name=normalize_name(last_name) or "",
            date_of_birth=date_of_birth,
            email=email,
            metadata=metadata.to_dict() if metadata is not None else None,
        )

    def parsed_metadata(self) -> Metadata | None:
        if self.metadata is None:
            return None
        return Metadata.from_dict(self.metadata)

    def with_metadata(self, metadata: Metadata) -> UserRecord:
        return replace(self, metadata=metadata.to_dict())


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------

class UserStore(Protocol):
    def list(self, prefix: str = USER_PREFIX) -> list[UserRecord]: ...

    def transaction(self, dry_run: bool = False) -> Any: ...

    def compare_and_set(self, record: UserRecord, expected_version: int) -> UserRecord: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_COLUMNS = (
    "key, id, first_name, last_name, normalized_first_name, normalized_last_name, "
    "date_of_birth, email, admin, metadata, version"
)


def _row_to_record(row: tuple) -> UserRecord:
    return UserRecord(
        key=row[0],
        id=row[1],
        first_name=row[2],
        last_name=row[3],
        normalized_first_name=row[4],
        normalized_last_name=row[5],
        date_of_birth=row[6],
        email=row[7],
        admin=row[8],
        metadata=row[9],
        version=row[10],
    )


class PostgresUserStore:
    """UserStore over a psycopg connection opened with autocommit=False."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def list(self, prefix: str = USER_PREFIX) -> list[UserRecord]:
        rows = self.conn.execute(
            f"SELECT {_COLUMNS} FROM user_record WHERE starts_with(key, %s) ORDER BY key",
            (prefix,),
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    def get(self, key: str) -> UserRecord | None:
        row = self.conn.execute(
            f"SELECT {_COLUMNS} FROM user_record WHERE key = %s",
            (key,),
        ).fetchone()
        return _row_to_record(row) if row else None

    @contextmanager
    def transaction(self, dry_run: bool = False) -> Iterator[PostgresUserStore]:
        """Commit the block's writes, or roll them back on error or dry run."""
        try:
            yield self
        except BaseException:
            self.conn.rollback()
            raise
        if dry_run:
            self.conn.rollback()
        else:
            self.conn.commit()

    def compare_and_set(self, record: UserRecord, expected_version: int) -> UserRecord:
        """Write record if the stored version equals expected_version.

        expected_version 0 inserts a new record. Returns the record with its
        new version.
        """
        metadata = Jsonb(record.metadata) if record.metadata is not None else None
        if expected_version == 0:
            row = self.conn.execute(
                """
                INSERT INTO user_record
                  (key, id, first_name, last_name, normalized_first_name,
                   normalized_last_name, date_of_birth, email, admin, metadata, version)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
                ON CONFLICT (key) DO NOTHING
                RETURNING version
                """,
                (record.key, record.id, record.first_name, record.last_name,
                 record.normalized_first_name, record.normalized_last_name,
                 record.date_of_birth, record.email, record.admin, metadata),
            ).fetchone()
        else:
            row = self.conn.execute(
                """
                UPDATE user_record SET
                  first_name = %s,
                  last_name = %s,
                  normalized_first_name = %s,
                  normalized_last_name = %s,
                  date_of_birth = %s,
                  email = %s,
                  admin = %s,
                  metadata = %s,
                  version = version + 1,
                  updated_at = now()
                WHERE key = %s AND version = %s
                RETURNING version
                """,
                (record.first_name, record.last_name,
                 record.normalized_first_name, record.normalized_last_name,
                 record.date_of_birth, record.email, record.admin, metadata,
                 record.key, expected_version),
            ).fetchone()
        if row is None:
            raise StaleRecordError(
                f"{record.key}: expected version {expected_version} is stale"
            )
        return replace(record, version=row[0])
