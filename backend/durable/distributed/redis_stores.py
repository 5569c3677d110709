"""Redis-backed durable stores for distributed mode.

These stores keep the same *synchronous* interfaces as the file stores so the
engine, entity store and gateway do not care which backend they run on.
Inboxes and operation queues are Redis lists: producers RPUSH, the single
owner of the key LRANGEs and acknowledges with LTRIM. The current execution of
an instance lives in `<prefix>instance:<id>:execution` and is swapped with a
Lua compare-and-set when the instance is started.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from redis import Redis

from ..callbacks.models import CorrelationToken
from ..entities.models import EntityOperation, EntityRecord
from ..orchestration.models import HistoryEvent, OrchestrationInstance
from ..schemas import iso_timestamp

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_CLAIM_EXECUTION_LUA = (
    "local current = redis.call('GET', KEYS[1]) or '' "
    "if current ~= ARGV[1] then return 0 end "
    "redis.call('SET', KEYS[1], ARGV[2]) "
    "return 1"
)


def _redis_from_url(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


@dataclass(frozen=True)
class RedisStoreConfig:
    url: str
    key_prefix: str = "durable:"

    def key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)


def _dumps(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json"), separators=(",", ":"), ensure_ascii=False)


def _loads(model: type[M], payload: Any, *, log_id: str) -> M | None:
    if not isinstance(payload, str) or not payload:
        return None
    try:
        return model.model_validate_json(payload)
    except ValidationError:
        logger.warning(
            "skipping malformed %s payload",
            model.__name__,
            extra={"instance_id": log_id},
        )
        return None


class _RedisStore:
    def __init__(self, config: RedisStoreConfig, *, client: Redis | None = None):
        self._config = config
        self._redis = client if client is not None else _redis_from_url(config.url)

    def ensure_base_dir(self) -> None:
        return None

    def _read_list(self, key: str, model: type[M], log_id: str) -> list[M]:
        items: list[M] = []
        for raw in self._redis.lrange(key, 0, -1):
            parsed = _loads(model, raw, log_id=log_id)
            if parsed is not None:
                items.append(parsed)
        return items

    def _ack_list(self, key: str, model: type[M], count: int) -> None:
        if count <= 0:
            return
        raw_items = self._redis.lrange(key, 0, -1)
        consumed = 0
        index = 0
        while index < len(raw_items) and consumed < count:
            if _loads(model, raw_items[index], log_id=key) is not None:
                consumed += 1
            index += 1
        self._redis.ltrim(key, index, -1)


class RedisInstanceStore(_RedisStore):
    """Instance snapshots as JSON strings plus a list-based inbox per instance."""

    def __init__(self, config: RedisStoreConfig, *, client: Redis | None = None):
        super().__init__(config, client=client)
        self._claim_script: Any = None

    def _key(self, instance_id: str) -> str:
        return self._config.key("instance", instance_id)

    def _inbox_key(self, instance_id: str) -> str:
        return self._config.key("instance", instance_id, "inbox")

    def _execution_key(self, instance_id: str) -> str:
        return self._config.key("instance", instance_id, "execution")

    def _index_key(self) -> str:
        return self._config.key("instances")

    def save(self, instance: OrchestrationInstance) -> OrchestrationInstance:
        self._redis.set(self._key(instance.instance_id), _dumps(instance))
        self._redis.sadd(self._index_key(), instance.instance_id)
        return instance

    def load(self, instance_id: str) -> OrchestrationInstance | None:
        return _loads(OrchestrationInstance, self._redis.get(self._key(instance_id)), log_id=instance_id)

    def claim_execution(self, instance_id: str, expected: str | None, execution_id: str) -> bool:
        """Compare-and-set of the current run id, atomic across processes."""
        if self._claim_script is None:
            self._claim_script = self._redis.register_script(_CLAIM_EXECUTION_LUA)
        result = self._claim_script(
            keys=[self._execution_key(instance_id)], args=[expected or "", execution_id]
        )
        return int(result or 0) > 0

    def list_instance_ids(self) -> list[str]:
        return sorted(self._redis.smembers(self._index_key()))

    def append_inbox(self, instance_id: str, event: HistoryEvent) -> None:
        self._redis.rpush(self._inbox_key(instance_id), _dumps(event))

    def peek_inbox(self, instance_id: str) -> list[HistoryEvent]:
        return self._read_list(self._inbox_key(instance_id), HistoryEvent, instance_id)

    def ack_inbox(self, instance_id: str, count: int) -> None:
        self._ack_list(self._inbox_key(instance_id), HistoryEvent, count)

    def delete(self, instance_id: str) -> None:
        self._redis.delete(
            self._key(instance_id), self._inbox_key(instance_id), self._execution_key(instance_id)
        )
        self._redis.srem(self._index_key(), instance_id)


class RedisEntityRecordStore(_RedisStore):
    """Entity records as JSON strings plus a list-based operation queue."""

    def _key(self, entity_id: str) -> str:
        return self._config.key("entity", entity_id)

    def _queue_key(self, entity_id: str) -> str:
        return self._config.key("entity", entity_id, "queue")

    def _index_key(self) -> str:
        return self._config.key("entities")

    def load(self, entity_id: str) -> EntityRecord | None:
        return _loads(EntityRecord, self._redis.get(self._key(entity_id)), log_id=entity_id)

    def save(self, record: EntityRecord) -> EntityRecord:
        self._redis.set(self._key(record.entity_id), _dumps(record))
        self._redis.sadd(self._index_key(), record.entity_id)
        return record

    def list_entity_ids(self) -> list[str]:
        return sorted(self._redis.smembers(self._index_key()))

    def append_operation(self, entity_id: str, operation: EntityOperation) -> None:
        self._redis.sadd(self._index_key(), entity_id)
        self._redis.rpush(self._queue_key(entity_id), _dumps(operation))

    def peek_operations(self, entity_id: str) -> list[EntityOperation]:
        return self._read_list(self._queue_key(entity_id), EntityOperation, entity_id)

    def ack_operations(self, entity_id: str, count: int) -> None:
        self._ack_list(self._queue_key(entity_id), EntityOperation, count)


class RedisCorrelationStore(_RedisStore):
    """Callback correlations; consumption is guarded by a SET NX marker."""

    def _key(self, token: str) -> str:
        return self._config.key("callback", token)

    def _consumed_key(self, token: str) -> str:
        return self._config.key("callback", token, "consumed")

    def _instance_key(self, instance_id: str) -> str:
        return self._config.key("instance", instance_id, "callbacks")

    def create(self, record: CorrelationToken) -> bool:
        created = self._redis.set(self._key(record.token), _dumps(record), nx=True)
        if not created:
            return False
        self._redis.sadd(self._instance_key(record.instance_id), record.token)
        return True

    def load(self, token: str) -> CorrelationToken | None:
        return _loads(CorrelationToken, self._redis.get(self._key(token)), log_id=token)

    def mark_consumed(self, token: str) -> CorrelationToken | None:
        record = self.load(token)
        if record is None or record.consumed:
            return None
        consumed_at = iso_timestamp()
        if not self._redis.set(self._consumed_key(token), consumed_at, nx=True):
            return None
        record.consumed = True
        record.consumed_at = consumed_at
        self._redis.set(self._key(token), _dumps(record))
        return record

    def delete(self, token: str) -> None:
        record = self.load(token)
        self._redis.delete(self._key(token), self._consumed_key(token))
        if record is not None:
            self._redis.srem(self._instance_key(record.instance_id), token)

    def tokens_for_instance(self, instance_id: str) -> list[CorrelationToken]:
        records = []
        for token in sorted(self._redis.smembers(self._instance_key(instance_id))):
            record = self.load(token)
            if record is not None:
                records.append(record)
        return records
