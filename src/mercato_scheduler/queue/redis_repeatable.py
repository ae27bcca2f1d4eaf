"""Redis-backed store of recurring registrations.

One hash per execution queue (``<prefix>:<queue>:repeat``) maps a
registration name to its JSON entry::

    {"name": "schedule-<id>", "id": "schedule-<id>",
     "repeat": {"pattern": "0 9 * * 1-5", "tz": "Europe/Warsaw"},
     "data": {"id": ..., "payload": {...}, "createdAt": ...},
     "options": {"remove_on_complete": {...}, "remove_on_fail": {...}},
     "updatedAt": "..."}

Adding under an existing name replaces the entry, so registration is
idempotent. A version counter is bumped on every change so the beat
scheduler can cheaply tell when to reload.

Requires: ``pip install redis``

Tags:
    queue, redis, repeatable-jobs, registrations
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import redis

from mercato_scheduler.logging import get_logger
from mercato_scheduler.protocols import RepeatableJob, RepeatOptions

logger = get_logger(__name__)

DEFAULT_PREFIX = "mercato:scheduler"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisRepeatableQueue:
    """:class:`~mercato_scheduler.protocols.RepeatableQueue` over a Redis hash.

    Example::

        queue = RedisRepeatableQueue.from_url("redis://localhost:6379/0")
        queue.add("schedule-abc", data, RepeatOptions(pattern="*/5 * * * *"))
        [job.name for job in queue.get_repeatable_jobs()]
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        name: str = "scheduler-execution",
        prefix: str = DEFAULT_PREFIX,
    ) -> None:
        self._client = client
        self.name = name
        self.hash_key = f"{prefix}:{name}:repeat"
        self.version_key = f"{prefix}:{name}:repeat:version"

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisRepeatableQueue:
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def add(
        self,
        name: str,
        data: dict[str, Any],
        repeat: RepeatOptions,
        *,
        options: dict[str, Any] | None = None,
    ) -> RepeatableJob:
        entry = {
            "name": name,
            "id": data.get("id", name),
            "repeat": repeat.to_dict(),
            "data": data,
            "options": options or {},
            "updatedAt": datetime.now(UTC).isoformat(),
        }
        pipe = self._client.pipeline()
        pipe.hset(self.hash_key, name, json.dumps(entry))
        pipe.incr(self.version_key)
        pipe.execute()
        return self._to_job(name, entry)

    def get_repeatable_jobs(self) -> list[RepeatableJob]:
        jobs: list[RepeatableJob] = []
        for raw_name, raw_entry in self._client.hgetall(self.hash_key).items():
            name = _text(raw_name)
            try:
                entry = json.loads(raw_entry)
            except (TypeError, ValueError):
                logger.warning("repeatable_entry_unreadable", registration=name, key=self.hash_key)
                continue
            jobs.append(self._to_job(name, entry))
        return sorted(jobs, key=lambda job: job.name)

    def remove_repeatable_by_key(self, key: str) -> bool:
        pipe = self._client.pipeline()
        pipe.hdel(self.hash_key, key)
        pipe.incr(self.version_key)
        removed, _ = pipe.execute()
        return bool(removed)

    def version(self) -> int:
        value = self._client.get(self.version_key)
        return int(value) if value is not None else 0

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _to_job(name: str, entry: dict[str, Any]) -> RepeatableJob:
        repeat = entry.get("repeat")
        return RepeatableJob(
            key=name,
            name=entry.get("name", name),
            id=entry.get("id"),
            repeat=RepeatOptions.from_dict(repeat) if isinstance(repeat, dict) else None,
            data=entry.get("data") or {},
            options=entry.get("options") or {},
        )
