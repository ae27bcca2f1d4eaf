"""Mutual exclusion for schedule execution.

Manifesto:
    Several processes may poll the same store. Before executing a due
    schedule a runner takes a lock on ``schedule:<id>``; whoever loses
    simply skips. Locking is best-effort: any failure reads as "someone
    else has it", and releasing never raises into a cleanup path.

On PostgreSQL the lock is a session-level advisory lock keyed by a 32-bit
hash of the key, held on one pooled connection between ``try_lock`` and
``unlock``. Databases without advisory locks (SQLite in development and
tests) use lock rows with insert-or-fail semantics and a TTL so a crashed
holder cannot block a schedule forever.

Tags:
    scheduling, locks, advisory-lock, postgresql, concurrency

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from mercato_scheduler.logging import get_logger
from mercato_scheduler.orm.tables import SchedulerLockTable

logger = get_logger(__name__)


def hash_lock_key(key: str) -> int:
    """Stable non-negative 32-bit hash of ``key`` (31-multiplier string hash)."""
    value = 0
    for char in key:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


def schedule_lock_key(schedule_id: str) -> str:
    return f"schedule:{schedule_id}"


class AdvisoryLock:
    """``try_lock`` / ``unlock`` pair over the schedule store's database.

    Example:
        >>> lock = AdvisoryLock(engine)
        >>> if lock.try_lock("schedule:abc"):
        ...     try:
        ...         ...
        ...     finally:
        ...         lock.unlock("schedule:abc")
    """

    def __init__(
        self,
        engine: Engine,
        *,
        instance_id: str | None = None,
        ttl_seconds: int = 300,
    ) -> None:
        self.engine = engine
        self.instance_id = instance_id or str(uuid4())
        self.ttl_seconds = ttl_seconds
        self._held: dict[str, Connection | None] = {}
        self._guard = threading.Lock()

    @property
    def uses_advisory_locks(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def held_keys(self) -> list[str]:
        with self._guard:
            return sorted(self._held)

    # === Acquire ===

    def try_lock(self, key: str) -> bool:
        """Try to take the lock; False on contention or on any error."""
        with self._guard:
            if key in self._held:
                return False
            # Reserve the slot so a concurrent caller in this process loses.
            self._held[key] = None

        try:
            if self.uses_advisory_locks:
                acquired = self._try_advisory(key)
            else:
                acquired = self._try_row(key)
        except Exception as exc:
            logger.error("lock_acquire_failed", lock_key=key, error=str(exc))
            acquired = False

        if not acquired:
            with self._guard:
                self._held.pop(key, None)
        return acquired

    def _try_advisory(self, key: str) -> bool:
        conn = self.engine.connect()
        try:
            acquired = conn.execute(
                text("SELECT pg_try_advisory_lock(:lock_id) AS acquired"),
                {"lock_id": hash_lock_key(key)},
            ).scalar()
            conn.commit()
        except Exception:
            conn.invalidate()
            conn.close()
            raise

        if not acquired:
            conn.close()
            return False

        with self._guard:
            self._held[key] = conn
        logger.debug("lock_acquired", lock_key=key)
        return True

    def _try_row(self, key: str) -> bool:
        now = datetime.now(UTC)
        lock_id = hash_lock_key(key)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(SchedulerLockTable).where(
                        SchedulerLockTable.lock_id == lock_id,
                        SchedulerLockTable.expires_at < now,
                    )
                )
                conn.execute(
                    SchedulerLockTable.__table__.insert().values(
                        lock_id=lock_id,
                        lock_key=key,
                        locked_by=self.instance_id,
                        locked_at=now,
                        expires_at=now + timedelta(seconds=self.ttl_seconds),
                    )
                )
        except IntegrityError:
            return False
        logger.debug("lock_acquired", lock_key=key)
        return True

    # === Release ===

    def unlock(self, key: str) -> None:
        """Release the lock. Never raises."""
        with self._guard:
            if key not in self._held:
                logger.debug("lock_not_held", lock_key=key)
                return
            conn = self._held.pop(key)

        try:
            if self.uses_advisory_locks:
                self._unlock_advisory(key, conn)
            else:
                self._unlock_row(key)
        except Exception as exc:
            logger.error("lock_release_failed", lock_key=key, error=str(exc))

    def _unlock_advisory(self, key: str, conn: Connection | None) -> None:
        if conn is None:
            return
        try:
            conn.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"),
                {"lock_id": hash_lock_key(key)},
            )
            conn.commit()
        except Exception:
            # Ending the server session drops every advisory lock it held.
            conn.invalidate()
            raise
        finally:
            conn.close()
        logger.debug("lock_released", lock_key=key)

    def _unlock_row(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                delete(SchedulerLockTable).where(
                    SchedulerLockTable.lock_id == hash_lock_key(key),
                    SchedulerLockTable.locked_by == self.instance_id,
                )
            )
        logger.debug("lock_released", lock_key=key)

    def release_all(self, *, exclude: Iterable[str] = ()) -> None:
        """Release every lock this instance holds (shutdown path).

        Keys in ``exclude`` stay held; their owner unlocks them when done.
        """
        keep = set(exclude)
        for key in self.held_keys():
            if key in keep:
                logger.info("lock_release_deferred", lock_key=key)
                continue
            self.unlock(key)
