"""TTL cache of successful task results."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from taskplane.orchestrator.models import TaskInput, TaskOptions, TaskResult, TaskType
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.storage.common import utc_now

logger = logging.getLogger(__name__)

CACHE_KEY_VERSION = "v1"


def build_cache_key(*, task_type: TaskType, task_input: TaskInput, options: TaskOptions) -> str:
    """Stable hash of everything that changes the provider's answer."""

    material = json.dumps(
        {
            "version": CACHE_KEY_VERSION,
            "task_type": task_type.value,
            "prompt": task_input.prompt,
            "system": task_input.system,
            "options": options.cache_fields(),
        },
        ensure_ascii=False,
        sort_keys=True,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class ResponseCache:
    """Response cache persisted through the repository; failures degrade to a miss."""

    def __init__(
        self,
        repository: ControlPlaneRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.clock = clock

    def get(self, cache_key: str, *, ttl_seconds: int) -> TaskResult | None:
        try:
            cached = self.repository.get_cached_response(cache_key)
        except SQLAlchemyError:
            logger.exception("Response cache read failed for key=%s", cache_key[:12])
            return None
        if cached is None:
            return None

        payload_json, created_at = cached
        if self.clock() - created_at >= timedelta(seconds=ttl_seconds):
            self.discard(cache_key)
            return None
        payload = json.loads(payload_json)
        return TaskResult(
            content=payload["content"],
            provider_used=payload["provider_used"],
            tokens_used=payload["tokens_used"],
            cost=payload["cost"],
            response_time_ms=payload["response_time_ms"],
            task_type=TaskType(payload["task_type"]),
            cached=True,
        )

    def discard(self, cache_key: str) -> None:
        try:
            self.repository.delete_cached_response(cache_key)
        except SQLAlchemyError:
            logger.exception("Response cache eviction failed for key=%s", cache_key[:12])

    def put(self, cache_key: str, result: TaskResult) -> None:
        payload = result.to_dict()
        payload.pop("cached")
        try:
            self.repository.put_cached_response(
                cache_key=cache_key,
                task_type=result.task_type.value,
                payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
            )
        except SQLAlchemyError:
            logger.exception("Response cache write failed for key=%s", cache_key[:12])
