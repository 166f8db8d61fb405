"""Document store for chain dedup records and the Twitch-mirrored entities.

Two implementations share the :class:`DocumentStore` interface:

:class:`RedisDocumentStore`
    Production store.  Documents are Redis hashes whose field values are JSON
    encoded.  The conditional chain operations (create-if-absent,
    test-and-clear, set-if-exists) and the field-level channel and
    prediction updates run as Lua scripts, so concurrent workers sharing
    the same Redis instance never overwrite each other's fields.

:class:`InMemoryDocumentStore`
    Dict-backed store guarded by an ``asyncio.Lock``.  Used for local
    development (``STORE_BACKEND=memory``) and tests.

Key layout (Redis)::

    scheduled_tasks:{task_type}        chain dedup record (hash)
    channels:{channel_id}              channel document (hash)
    channels:live                      live channel index (sorted set, score 0)
    predictions:{prediction_id}        prediction document (hash)
    predictions:open:{channel_id}      non-terminal prediction ids (set)
    stream_metrics:{channel_id}:{type} latest metric sample (hash)
    webhook_subs:{subscription_id}     EventSub subscription record (hash)
    webhook_subs:channel:{channel_id}  subscribed event types (hash type -> id)
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Collection

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from stream_speculator.core.exceptions import StoreError
from stream_speculator.core.models import (
    Channel,
    Prediction,
    PredictionStatus,
    StreamMetric,
    StreamMetricType,
    WebhookSubscription,
    WireModel,
)

logger = logging.getLogger(__name__)

_CHAIN_PREFIX = "scheduled_tasks"
_CHANNEL_PREFIX = "channels"
_LIVE_INDEX = "channels:live"
_PREDICTION_PREFIX = "predictions"
_OPEN_PREDICTIONS_PREFIX = "predictions:open:"
_METRIC_PREFIX = "stream_metrics"
_WEBHOOK_PREFIX = "webhook_subs"

# Marker field written on chain creation.  Its presence is what makes an
# otherwise empty payload a live record.
_CREATED_FIELD = "_createdAt"


# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

# Create a chain record if absent, merge the payload either way.
#
# KEYS[1]: chain record key
# ARGV[1]: creation timestamp (epoch ms)
# ARGV[2:]: field/value pairs
#
# Returns 1 if the record was created, 0 if it already existed.
_LUA_CREATE_OR_MERGE = """
local created = redis.call('HSETNX', KEYS[1], '_createdAt', ARGV[1])
for i = 2, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
return created
"""

# Atomically read a boolean field and reset it to false.
#
# KEYS[1]: chain record key
# ARGV[1]: field name
#
# Returns 1 if the field was true, 0 otherwise (including a missing record).
_LUA_TEST_AND_CLEAR = """
local value = redis.call('HGET', KEYS[1], ARGV[1])
if value == 'true' then
    redis.call('HSET', KEYS[1], ARGV[1], 'false')
    return 1
end
return 0
"""

# Set fields on a record only if the record exists.
#
# KEYS[1]: record key
# ARGV: field/value pairs
#
# Returns 1 if the record existed and was updated, 0 otherwise.
_LUA_SET_IF_EXISTS = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
for i = 1, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
return 1
"""

# Upsert channel fields and keep the live index in step with isLive.
#
# KEYS[1]: channel key
# KEYS[2]: live index
# ARGV[1]: channel id
# ARGV[2]: JSON-encoded channel id (written only when the document is new)
# ARGV[3]: 'true' / 'false' when isLive is being set, '' otherwise
# ARGV[4:]: field/value pairs
#
# Returns the document after the update (HGETALL pairs).
_LUA_UPSERT_CHANNEL = """
redis.call('HSETNX', KEYS[1], 'id', ARGV[2])
for i = 4, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[3] == 'true' then
    redis.call('ZADD', KEYS[2], 0, ARGV[1])
elseif ARGV[3] == 'false' then
    redis.call('ZREM', KEYS[2], ARGV[1])
end
return redis.call('HGETALL', KEYS[1])
"""

# Overwrite stream.viewerCount of a channel that is live and has a stream.
#
# KEYS[1]: channel key
# ARGV[1]: viewer count
#
# Returns 1 if the count was written, 0 otherwise.
_LUA_SET_VIEWER_COUNT = """
if redis.call('HGET', KEYS[1], 'isLive') ~= 'true' then
    return 0
end
local raw = redis.call('HGET', KEYS[1], 'stream')
if not raw or raw == 'null' then
    return 0
end
local stream = cjson.decode(raw)
stream['viewerCount'] = tonumber(ARGV[1])
redis.call('HSET', KEYS[1], 'stream', cjson.encode(stream))
return 1
"""

# Set fields on an existing prediction, optionally only from given statuses,
# and move it in or out of its channel's open index when the status changes.
#
# KEYS[1]: prediction key
# ARGV[1]: prediction id
# ARGV[2]: open index key prefix (channel id is appended)
# ARGV[3]: 'open' / 'terminal' when status is being set, '' otherwise
# ARGV[4]: comma-separated statuses the update may start from, '' for any
# ARGV[5:]: field/value pairs
#
# Returns the document after the update, or an empty list if it was not applied.
_LUA_UPDATE_PREDICTION = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return {}
end
if ARGV[4] ~= '' then
    local raw = redis.call('HGET', KEYS[1], 'status')
    local current = raw and cjson.decode(raw) or ''
    local allowed = false
    for status in string.gmatch(ARGV[4], '[^,]+') do
        if status == current then
            allowed = true
        end
    end
    if not allowed then
        return {}
    end
end
for i = 5, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if ARGV[3] ~= '' then
    local index = ARGV[2] .. cjson.decode(redis.call('HGET', KEYS[1], 'channelId'))
    if ARGV[3] == 'terminal' then
        redis.call('SREM', index, ARGV[1])
    else
        redis.call('SADD', index, ARGV[1])
    end
end
return redis.call('HGETALL', KEYS[1])
"""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class DocumentStore(abc.ABC):
    """Persistence operations used by the scheduler and the task handlers.

    Chain dedup records are keyed by the stringified task type and are only
    touched through the ``*_chain*`` primitives, each of which is atomic.
    Entity documents (channels, predictions, metrics, subscriptions) are
    read and written as pydantic models.
    """

    # -- chain dedup records -------------------------------------------------

    @abc.abstractmethod
    async def create_chain(self, key: str, data: dict[str, Any]) -> bool:
        """Create the chain record *key* if absent; merge *data* into it either way.

        Returns:
            ``True`` only for the caller that created the record.
        """

    @abc.abstractmethod
    async def test_and_clear_chain_flag(self, key: str, field: str) -> bool:
        """Atomically read boolean *field* of chain *key* and reset it to false.

        Returns:
            ``True`` if the flag was set.  ``False`` if it was unset or the
            record does not exist.
        """

    @abc.abstractmethod
    async def set_chain_fields(self, key: str, **fields: Any) -> bool:
        """Set *fields* on chain *key* if the record exists.

        Returns:
            ``True`` if the record existed.
        """

    @abc.abstractmethod
    async def delete_chain(self, key: str) -> bool:
        """Delete chain *key*.  Returns ``True`` if a record was removed."""

    @abc.abstractmethod
    async def get_chain(self, key: str) -> dict[str, Any] | None:
        """Return the payload of chain *key*, or ``None`` if the chain is not active."""

    # -- channels --------------------------------------------------------------

    @abc.abstractmethod
    async def get_channel(self, channel_id: str) -> Channel | None: ...

    @abc.abstractmethod
    async def save_channel(self, channel: Channel) -> None: ...

    @abc.abstractmethod
    async def list_live_channel_ids(self, after: str | None, limit: int) -> list[str]:
        """Return up to *limit* live channel ids sorted ascending, strictly after *after*."""

    @abc.abstractmethod
    async def update_channel(self, channel_id: str, **fields: Any) -> Channel:
        """Atomically set *fields* on a channel, creating the document if needed.

        Only the named fields are written; concurrent updates of other fields
        are never overwritten.  Setting ``is_live`` moves the channel in or
        out of the live index in the same step.

        Args:
            channel_id: Twitch broadcaster user id.
            **fields: Model attribute names and their new values.

        Returns:
            The stored channel after the update.

        Raises:
            ValueError: If a field name is not a ``Channel`` attribute.
        """

    @abc.abstractmethod
    async def set_stream_viewer_count(self, channel_id: str, viewer_count: int) -> bool:
        """Set ``stream.viewer_count`` if the channel is live and has a stream.

        Returns:
            ``True`` if the count was written.
        """

    async def iter_live_channel_pages(self, page_size: int) -> AsyncIterator[list[str]]:
        """Yield the ids of all live channels in pages of at most *page_size*.

        Pagination is cursor based (last id of the previous page), so channels
        going live or offline mid-scan never shift a page boundary.  Empty
        pages are never yielded.
        """
        if page_size < 1:
            raise ValueError("page_size must be positive")
        cursor: str | None = None
        while True:
            page = await self.list_live_channel_ids(cursor, page_size)
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            cursor = page[-1]

    # -- predictions -----------------------------------------------------------

    @abc.abstractmethod
    async def get_prediction(self, prediction_id: str) -> Prediction | None: ...

    @abc.abstractmethod
    async def save_prediction(self, prediction: Prediction) -> None:
        """Insert or replace *prediction* and keep the open index in step with its status."""

    @abc.abstractmethod
    async def list_open_predictions(
        self,
        channel_id: str,
        status: PredictionStatus | None = None,
    ) -> list[Prediction]:
        """Return the channel's non-terminal predictions, optionally only those in *status*."""

    @abc.abstractmethod
    async def update_prediction(
        self,
        prediction_id: str,
        only_if_status: Collection[PredictionStatus] | None = None,
        **fields: Any,
    ) -> Prediction | None:
        """Atomically set *fields* on an existing prediction.

        Args:
            prediction_id: Prediction to update.
            only_if_status: When given, the update is applied only while the
                stored status is one of these.
            **fields: Model attribute names and their new values.

        Returns:
            The stored prediction after the update, or ``None`` if it does
            not exist or its status did not allow the update.
        """

    # -- stream metrics --------------------------------------------------------

    @abc.abstractmethod
    async def save_stream_metric(self, metric: StreamMetric) -> None:
        """Store *metric*, replacing the previous sample for its (channel, type)."""

    @abc.abstractmethod
    async def get_stream_metric(
        self,
        channel_id: str,
        metric_type: StreamMetricType = StreamMetricType.VIEWER_COUNT,
    ) -> StreamMetric | None: ...

    # -- webhook subscriptions ---------------------------------------------------

    @abc.abstractmethod
    async def record_webhook_subscription(self, subscription: WebhookSubscription) -> None: ...

    @abc.abstractmethod
    async def delete_webhook_subscription(self, subscription_id: str) -> bool:
        """Remove a subscription record.  Returns ``True`` if one was removed."""

    @abc.abstractmethod
    async def get_webhook_subscription_types(self, channel_id: str) -> set[str]:
        """Return the EventSub types the channel is already subscribed to."""

    # -- lifecycle -------------------------------------------------------------

    @abc.abstractmethod
    async def ping(self) -> bool: ...

    async def aclose(self) -> None:
        """Release connections held by the store."""


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------


def _encode_fields(document: dict[str, Any]) -> dict[str, str]:
    return {key: json.dumps(value) for key, value in document.items()}


def _decode_fields(raw: dict[str, str]) -> dict[str, Any]:
    return {key: json.loads(value) for key, value in raw.items() if key != _CREATED_FIELD}


def _flatten(mapping: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in mapping.items():
        args.extend((key, value))
    return args


def _pairs_to_dict(pairs: list[str]) -> dict[str, str]:
    return dict(zip(pairs[0::2], pairs[1::2]))


def _check_field_names(model: type[WireModel], fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(model.model_fields)
    if unknown:
        raise ValueError(f"unknown {model.__name__} fields: {sorted(unknown)}")


def _encode_partial(model: type[WireModel], base: dict[str, Any], fields: dict[str, Any]) -> dict[str, str]:
    """Validate *fields* against *model* and JSON-encode only those, keyed by alias.

    *base* supplies the required attributes the partial document lacks; it is
    used for validation only and never written.
    """
    _check_field_names(model, fields)
    document = model.model_validate({**base, **fields})
    return _encode_fields(document.model_dump(mode="json", by_alias=True, include=set(fields)))


class RedisDocumentStore(DocumentStore):
    """:class:`DocumentStore` backed by ``redis.asyncio``.

    Args:
        redis_client: A ``redis.asyncio.Redis`` created with
            ``decode_responses=True``.
    """

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self.redis_client = redis_client
        self._sha_create = ""
        self._sha_test_and_clear = ""
        self._sha_set_if_exists = ""
        self._sha_upsert_channel = ""
        self._sha_set_viewer_count = ""
        self._sha_update_prediction = ""

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisDocumentStore":
        client: aioredis.Redis = aioredis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_scripts_loaded(self) -> None:
        """Upload the Lua scripts and cache their SHA1 hashes.

        Called lazily so the Redis connection is not needed at construction.
        """
        if self._sha_create:
            return
        try:
            self._sha_create = await self.redis_client.script_load(_LUA_CREATE_OR_MERGE)
            self._sha_test_and_clear = await self.redis_client.script_load(_LUA_TEST_AND_CLEAR)
            self._sha_set_if_exists = await self.redis_client.script_load(_LUA_SET_IF_EXISTS)
            self._sha_upsert_channel = await self.redis_client.script_load(_LUA_UPSERT_CHANNEL)
            self._sha_set_viewer_count = await self.redis_client.script_load(_LUA_SET_VIEWER_COUNT)
            self._sha_update_prediction = await self.redis_client.script_load(_LUA_UPDATE_PREDICTION)
        except RedisError as exc:
            logger.exception("Failed to load Lua scripts into Redis")
            raise StoreError("could not load store scripts") from exc

    async def _run_script(self, sha: str, keys: list[str], *args: str) -> Any:
        try:
            return await self.redis_client.evalsha(sha, len(keys), *keys, *args)  # type: ignore[attr-defined]
        except RedisError as exc:
            raise StoreError(f"script failed on {keys[0]}") from exc

    async def _evalsha(self, sha: str, key: str, *args: str) -> int:
        return int(await self._run_script(sha, [key], *args))

    async def _read(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self.redis_client.hgetall(key)
        except RedisError as exc:
            raise StoreError(f"read failed on {key}") from exc
        if not raw:
            return None
        return _decode_fields(raw)

    @staticmethod
    def _chain_key(key: str) -> str:
        return f"{_CHAIN_PREFIX}:{key}"

    # ------------------------------------------------------------------
    # Chain dedup records
    # ------------------------------------------------------------------

    async def create_chain(self, key: str, data: dict[str, Any]) -> bool:
        await self._ensure_scripts_loaded()
        now_ms = str(int(time.time() * 1000))
        args = _flatten(_encode_fields(data))
        created = await self._evalsha(self._sha_create, self._chain_key(key), now_ms, *args)
        return created == 1

    async def test_and_clear_chain_flag(self, key: str, field: str) -> bool:
        await self._ensure_scripts_loaded()
        result = await self._evalsha(self._sha_test_and_clear, self._chain_key(key), field)
        return result == 1

    async def set_chain_fields(self, key: str, **fields: Any) -> bool:
        await self._ensure_scripts_loaded()
        args = _flatten(_encode_fields(fields))
        result = await self._evalsha(self._sha_set_if_exists, self._chain_key(key), *args)
        return result == 1

    async def delete_chain(self, key: str) -> bool:
        try:
            removed = await self.redis_client.delete(self._chain_key(key))
        except RedisError as exc:
            raise StoreError(f"delete failed on chain {key}") from exc
        return bool(removed)

    async def get_chain(self, key: str) -> dict[str, Any] | None:
        return await self._read(self._chain_key(key))

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def get_channel(self, channel_id: str) -> Channel | None:
        document = await self._read(f"{_CHANNEL_PREFIX}:{channel_id}")
        return Channel.model_validate(document) if document else None

    async def save_channel(self, channel: Channel) -> None:
        key = f"{_CHANNEL_PREFIX}:{channel.id}"
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping=_encode_fields(channel.to_wire()))
                if channel.is_live:
                    pipe.zadd(_LIVE_INDEX, {channel.id: 0})
                else:
                    pipe.zrem(_LIVE_INDEX, channel.id)
                await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"write failed on channel {channel.id}") from exc

    async def update_channel(self, channel_id: str, **fields: Any) -> Channel:
        await self._ensure_scripts_loaded()
        encoded = _encode_partial(Channel, {"id": channel_id}, fields)
        live = encoded.get("isLive", "")
        pairs = await self._run_script(
            self._sha_upsert_channel,
            [f"{_CHANNEL_PREFIX}:{channel_id}", _LIVE_INDEX],
            channel_id,
            json.dumps(channel_id),
            live,
            *_flatten(encoded),
        )
        return Channel.model_validate(_decode_fields(_pairs_to_dict(pairs)))

    async def set_stream_viewer_count(self, channel_id: str, viewer_count: int) -> bool:
        await self._ensure_scripts_loaded()
        written = await self._evalsha(
            self._sha_set_viewer_count,
            f"{_CHANNEL_PREFIX}:{channel_id}",
            str(viewer_count),
        )
        return written == 1

    async def list_live_channel_ids(self, after: str | None, limit: int) -> list[str]:
        lower = f"({after}" if after is not None else "-"
        try:
            return list(
                await self.redis_client.zrangebylex(_LIVE_INDEX, lower, "+", start=0, num=limit)
            )
        except RedisError as exc:
            raise StoreError("live channel scan failed") from exc

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------

    async def get_prediction(self, prediction_id: str) -> Prediction | None:
        document = await self._read(f"{_PREDICTION_PREFIX}:{prediction_id}")
        return Prediction.model_validate(document) if document else None

    async def save_prediction(self, prediction: Prediction) -> None:
        key = f"{_PREDICTION_PREFIX}:{prediction.id}"
        open_key = f"{_OPEN_PREDICTIONS_PREFIX}{prediction.channel_id}"
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping=_encode_fields(prediction.to_wire()))
                if prediction.status.is_terminal:
                    pipe.srem(open_key, prediction.id)
                else:
                    pipe.sadd(open_key, prediction.id)
                await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"write failed on prediction {prediction.id}") from exc

    async def list_open_predictions(
        self,
        channel_id: str,
        status: PredictionStatus | None = None,
    ) -> list[Prediction]:
        try:
            ids = await self.redis_client.smembers(f"{_OPEN_PREDICTIONS_PREFIX}{channel_id}")
        except RedisError as exc:
            raise StoreError(f"open prediction lookup failed for {channel_id}") from exc
        predictions = await asyncio.gather(*(self.get_prediction(pid) for pid in sorted(ids)))
        return [
            p
            for p in predictions
            if p is not None and not p.status.is_terminal and (status is None or p.status is status)
        ]

    async def update_prediction(
        self,
        prediction_id: str,
        only_if_status: Collection[PredictionStatus] | None = None,
        **fields: Any,
    ) -> Prediction | None:
        if only_if_status is not None and not only_if_status:
            return None
        await self._ensure_scripts_loaded()
        encoded = _encode_partial(Prediction, {"id": prediction_id, "channel_id": ""}, fields)
        index_move = ""
        if "status" in fields:
            index_move = "terminal" if PredictionStatus(fields["status"]).is_terminal else "open"
        allowed = ",".join(PredictionStatus(s).value for s in only_if_status) if only_if_status else ""
        pairs = await self._run_script(
            self._sha_update_prediction,
            [f"{_PREDICTION_PREFIX}:{prediction_id}"],
            prediction_id,
            _OPEN_PREDICTIONS_PREFIX,
            index_move,
            allowed,
            *_flatten(encoded),
        )
        if not pairs:
            return None
        return Prediction.model_validate(_decode_fields(_pairs_to_dict(pairs)))

    # ------------------------------------------------------------------
    # Stream metrics
    # ------------------------------------------------------------------

    async def save_stream_metric(self, metric: StreamMetric) -> None:
        key = f"{_METRIC_PREFIX}:{metric.channel_id}:{int(metric.type)}"
        try:
            await self.redis_client.hset(key, mapping=_encode_fields(metric.to_wire()))
        except RedisError as exc:
            raise StoreError(f"write failed on metric {key}") from exc

    async def get_stream_metric(
        self,
        channel_id: str,
        metric_type: StreamMetricType = StreamMetricType.VIEWER_COUNT,
    ) -> StreamMetric | None:
        document = await self._read(f"{_METRIC_PREFIX}:{channel_id}:{int(metric_type)}")
        return StreamMetric.model_validate(document) if document else None

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------

    async def record_webhook_subscription(self, subscription: WebhookSubscription) -> None:
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    f"{_WEBHOOK_PREFIX}:{subscription.id}",
                    mapping=_encode_fields(subscription.to_wire()),
                )
                pipe.hset(
                    f"{_WEBHOOK_PREFIX}:channel:{subscription.channel_id}",
                    subscription.type,
                    subscription.id,
                )
                await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"write failed on subscription {subscription.id}") from exc

    async def delete_webhook_subscription(self, subscription_id: str) -> bool:
        document = await self._read(f"{_WEBHOOK_PREFIX}:{subscription_id}")
        if document is None:
            return False
        subscription = WebhookSubscription.model_validate(document)
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(f"{_WEBHOOK_PREFIX}:{subscription_id}")
                pipe.hdel(f"{_WEBHOOK_PREFIX}:channel:{subscription.channel_id}", subscription.type)
                await pipe.execute()
        except RedisError as exc:
            raise StoreError(f"delete failed on subscription {subscription_id}") from exc
        return True

    async def get_webhook_subscription_types(self, channel_id: str) -> set[str]:
        try:
            types = await self.redis_client.hkeys(f"{_WEBHOOK_PREFIX}:channel:{channel_id}")
        except RedisError as exc:
            raise StoreError(f"subscription lookup failed for {channel_id}") from exc
        return set(types)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except RedisError:
            logger.exception("Redis ping failed")
            return False

    async def aclose(self) -> None:
        await self.redis_client.aclose()


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryDocumentStore(DocumentStore):
    """Process-local :class:`DocumentStore` for development and tests.

    Every operation holds one ``asyncio.Lock``, which makes the conditional
    chain primitives atomic with respect to other coroutines on the loop.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.chains: dict[str, dict[str, Any]] = {}
        self.channels: dict[str, Channel] = {}
        self.predictions: dict[str, Prediction] = {}
        self.metrics: dict[tuple[str, int], StreamMetric] = {}
        self.subscriptions: dict[str, WebhookSubscription] = {}

    async def create_chain(self, key: str, data: dict[str, Any]) -> bool:
        async with self._lock:
            created = key not in self.chains
            self.chains.setdefault(key, {}).update(data)
            return created

    async def test_and_clear_chain_flag(self, key: str, field: str) -> bool:
        async with self._lock:
            record = self.chains.get(key)
            if record is None or record.get(field) is not True:
                return False
            record[field] = False
            return True

    async def set_chain_fields(self, key: str, **fields: Any) -> bool:
        async with self._lock:
            record = self.chains.get(key)
            if record is None:
                return False
            record.update(fields)
            return True

    async def delete_chain(self, key: str) -> bool:
        async with self._lock:
            return self.chains.pop(key, None) is not None

    async def get_chain(self, key: str) -> dict[str, Any] | None:
        async with self._lock:
            record = self.chains.get(key)
            return dict(record) if record is not None else None

    async def get_channel(self, channel_id: str) -> Channel | None:
        async with self._lock:
            channel = self.channels.get(channel_id)
            return channel.model_copy(deep=True) if channel else None

    async def save_channel(self, channel: Channel) -> None:
        async with self._lock:
            self.channels[channel.id] = channel.model_copy(deep=True)

    async def update_channel(self, channel_id: str, **fields: Any) -> Channel:
        _check_field_names(Channel, fields)
        async with self._lock:
            current = self.channels.get(channel_id) or Channel(id=channel_id)
            updated = Channel.model_validate({**current.model_dump(), **fields})
            self.channels[channel_id] = updated
            return updated.model_copy(deep=True)

    async def set_stream_viewer_count(self, channel_id: str, viewer_count: int) -> bool:
        async with self._lock:
            channel = self.channels.get(channel_id)
            if channel is None or not channel.is_live or channel.stream is None:
                return False
            channel.stream.viewer_count = viewer_count
            return True

    async def list_live_channel_ids(self, after: str | None, limit: int) -> list[str]:
        async with self._lock:
            live = sorted(cid for cid, ch in self.channels.items() if ch.is_live)
        if after is not None:
            live = [cid for cid in live if cid > after]
        return live[:limit]

    async def get_prediction(self, prediction_id: str) -> Prediction | None:
        async with self._lock:
            prediction = self.predictions.get(prediction_id)
            return prediction.model_copy(deep=True) if prediction else None

    async def save_prediction(self, prediction: Prediction) -> None:
        async with self._lock:
            self.predictions[prediction.id] = prediction.model_copy(deep=True)

    async def list_open_predictions(
        self,
        channel_id: str,
        status: PredictionStatus | None = None,
    ) -> list[Prediction]:
        async with self._lock:
            return [
                p.model_copy(deep=True)
                for _, p in sorted(self.predictions.items())
                if p.channel_id == channel_id
                and not p.status.is_terminal
                and (status is None or p.status is status)
            ]

    async def update_prediction(
        self,
        prediction_id: str,
        only_if_status: Collection[PredictionStatus] | None = None,
        **fields: Any,
    ) -> Prediction | None:
        _check_field_names(Prediction, fields)
        async with self._lock:
            current = self.predictions.get(prediction_id)
            if current is None:
                return None
            if only_if_status is not None and current.status not in only_if_status:
                return None
            updated = Prediction.model_validate({**current.model_dump(), **fields})
            self.predictions[prediction_id] = updated
            return updated.model_copy(deep=True)

    async def save_stream_metric(self, metric: StreamMetric) -> None:
        async with self._lock:
            self.metrics[(metric.channel_id, int(metric.type))] = metric.model_copy()

    async def get_stream_metric(
        self,
        channel_id: str,
        metric_type: StreamMetricType = StreamMetricType.VIEWER_COUNT,
    ) -> StreamMetric | None:
        async with self._lock:
            return self.metrics.get((channel_id, int(metric_type)))

    async def record_webhook_subscription(self, subscription: WebhookSubscription) -> None:
        async with self._lock:
            self.subscriptions[subscription.id] = subscription

    async def delete_webhook_subscription(self, subscription_id: str) -> bool:
        async with self._lock:
            return self.subscriptions.pop(subscription_id, None) is not None

    async def get_webhook_subscription_types(self, channel_id: str) -> set[str]:
        async with self._lock:
            return {s.type for s in self.subscriptions.values() if s.channel_id == channel_id}

    async def ping(self) -> bool:
        return True
