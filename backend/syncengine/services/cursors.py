"""Durable sync watermarks.

WHAT:
    `CursorStore` reads and conditionally writes one row of `sync_cursors`,
    keyed by (integration_id, job_type, cursor_key).

WHY:
    Fill and fresh jobs write the same watermark with different contracts:
    - initialize_if_absent: fill jobs may seed a cursor but never overwrite one
    - advance_if_greater: fresh jobs only ever move the cursor forward
    Both are single conditional statements run inside the persistence
    transaction, and both report whether the stored value changed.

CURSOR VALUES:
    Compared as strings, so values must be canonical:
    - Shopify: UTC timestamp "YYYY-MM-DDTHH:MM:SSZ"
    - Meta: date "YYYY-MM-DD"
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from syncengine.models import SyncCursor
from syncengine.services.persistence import dialect_insert

logger = logging.getLogger(__name__)

SHOPIFY_FRESH_JOB = "shopify_fresh"
SHOPIFY_CURSOR_KEY = "last_synced_order_updated_at"
META_FRESH_JOB = "meta_fresh"
META_CURSOR_KEY = "meta_last_window_end"

_CONFLICT_COLUMNS = ["integration_id", "job_type", "cursor_key"]


@dataclass(frozen=True)
class CursorStore:
    integration_id: UUID
    job_type: str
    cursor_key: str

    @classmethod
    def shopify(cls, integration_id: UUID) -> "CursorStore":
        return cls(integration_id, SHOPIFY_FRESH_JOB, SHOPIFY_CURSOR_KEY)

    @classmethod
    def meta(cls, integration_id: UUID) -> "CursorStore":
        return cls(integration_id, META_FRESH_JOB, META_CURSOR_KEY)

    def read(self, db: Session) -> Optional[str]:
        return db.execute(
            select(SyncCursor.cursor_value).where(
                SyncCursor.integration_id == self.integration_id,
                SyncCursor.job_type == self.job_type,
                SyncCursor.cursor_key == self.cursor_key,
            )
        ).scalar_one_or_none()

    def _values(self, value: str) -> dict:
        return {
            "integration_id": self.integration_id,
            "job_type": self.job_type,
            "cursor_key": self.cursor_key,
            "cursor_value": value,
            "updated_at": datetime.utcnow(),
        }

    def initialize_if_absent(self, db: Session, value: str) -> bool:
        """Insert the cursor unless a row exists. True only if a row was inserted."""
        table = SyncCursor.__table__
        stmt = (
            dialect_insert(db, SyncCursor)
            .values(**self._values(value))
            .on_conflict_do_nothing(index_elements=_CONFLICT_COLUMNS)
            .returning(table.c.cursor_value)
        )
        inserted = db.execute(stmt).first() is not None
        logger.info(
            "[CURSOR] initialize_if_absent %s/%s for %s -> %s (initialized=%s)",
            self.job_type, self.cursor_key, self.integration_id, value, inserted,
        )
        return inserted

    def advance_if_greater(self, db: Session, value: str) -> bool:
        """Insert the cursor, or update it only when `value` is strictly greater.

        True only if the stored value changed.
        """
        table = SyncCursor.__table__
        stmt = dialect_insert(db, SyncCursor).values(**self._values(value))
        stmt = stmt.on_conflict_do_update(
            index_elements=_CONFLICT_COLUMNS,
            set_={"cursor_value": stmt.excluded.cursor_value, "updated_at": stmt.excluded.updated_at},
            where=table.c.cursor_value < stmt.excluded.cursor_value,
        ).returning(table.c.cursor_value)
        advanced = db.execute(stmt).first() is not None
        logger.info(
            "[CURSOR] advance_if_greater %s/%s for %s -> %s (advanced=%s)",
            self.job_type, self.cursor_key, self.integration_id, value, advanced,
        )
        return advanced
