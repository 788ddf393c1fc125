"""Sharing cache entries and blocking state between instances over redis."""

from __future__ import annotations

import base64
import json
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

import dns.exception
import dns.message
import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from sinkhole.logsetup import prefixed_log
from sinkhole.model import Response, ResponseType

SYNC_CHANNEL_NAME = "blocky_sync"
CACHE_STORE_PREFIX = "blocky:cache:"
CHANNEL_CAPACITY = 1000
CACHE_REASON = "EXTERNAL_CACHE"
DEFAULT_CACHE_TIME = 1.0
MESSAGE_TYPE_CACHE = 0
MESSAGE_TYPE_ENABLE = 1

_POLL_INTERVAL = 0.1
_NANOSECONDS = 1_000_000_000


@dataclass
class RedisConfig:
    """Connection settings; an empty address disables redis."""

    address: str = ""
    password: str = ""
    database: int = 0
    connection_attempts: int = 3
    connection_cooldown: float = 1.0


@dataclass
class CacheMessage:
    """A cache entry received from another instance."""

    key: str
    response: Response


@dataclass
class EnabledMessage:
    """A change of the blocking state; ``duration`` is in seconds."""

    state: bool = False
    duration: float = 0.0
    groups: list[str] = field(default_factory=list)


def prefix_key(key: str) -> str:
    """Key under which a cache entry is stored."""
    return f"{CACHE_STORE_PREFIX}{key}"


def clean_key(key: str) -> str:
    """Strip the cache store prefix from a stored key."""
    return key[len(CACHE_STORE_PREFIX):] if key.startswith(CACHE_STORE_PREFIX) else key


def get_ttl(message: dns.message.Message) -> float:
    """Largest answer TTL in seconds, or the default cache time if that is 0."""
    ttl = max((rrset.ttl for rrset in message.answer), default=0)
    return float(ttl) if ttl else DEFAULT_CACHE_TIME


def convert_message(key: str, payload: bytes, ttl: float) -> CacheMessage:
    """Decode a wire-format DNS message into a cached response."""
    message = dns.message.from_wire(payload)
    if ttl > 0:
        for rrset in message.answer:
            rrset.ttl = int(ttl)
    return CacheMessage(
        key=key,
        response=Response(res=message, reason=CACHE_REASON, rtype=ResponseType.CACHED),
    )


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: Any) -> bytes:
    return base64.b64decode(value) if value else b""


def _encode_sync_message(message_type: int, body: bytes, client: bytes, key: str = "") -> bytes:
    data: dict[str, Any] = {}
    if key:
        data["k"] = key
    data["t"] = message_type
    data["m"] = _b64encode(body)
    data["c"] = _b64encode(client)
    return json.dumps(data).encode()


def _encode_enabled(message: EnabledMessage) -> bytes:
    data: dict[str, Any] = {"s": message.state}
    if message.duration:
        data["d"] = int(message.duration * _NANOSECONDS)
    if message.groups:
        data["g"] = list(message.groups)
    return json.dumps(data).encode()


def _decode_enabled(body: bytes) -> EnabledMessage:
    data = json.loads(body)
    return EnabledMessage(
        state=bool(data.get("s", False)),
        duration=data.get("d", 0) / _NANOSECONDS,
        groups=list(data.get("g") or []),
    )


class RedisClient:
    """Publishes and receives cache entries and blocking state changes."""

    def __init__(self, config: RedisConfig, connection: Any) -> None:
        self.config = config
        self.id = uuid.uuid4().bytes
        self.cache_channel: queue.Queue[CacheMessage] = queue.Queue(CHANNEL_CAPACITY)
        self.enabled_channel: queue.Queue[EnabledMessage] = queue.Queue(CHANNEL_CAPACITY)
        self._connection = connection
        self._log = prefixed_log("redis")
        self._send_buffer: queue.Queue[tuple[str, dns.message.Message]] = queue.Queue(
            CHANNEL_CAPACITY
        )
        self._stop = threading.Event()
        self._pubsub = connection.pubsub()
        self._pubsub.subscribe(SYNC_CHANNEL_NAME)
        self._threads = [
            threading.Thread(target=self._receive_loop, daemon=True),
            threading.Thread(target=self._send_loop, daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def publish_cache(self, key: str, message: dns.message.Message | None) -> None:
        """Queue a cache entry for publishing and storing."""
        if key and message is not None:
            self._send_buffer.put((key, message))

    def publish_enabled(self, state: EnabledMessage) -> None:
        """Publish a blocking state change to the other instances."""
        payload = _encode_sync_message(MESSAGE_TYPE_ENABLE, _encode_enabled(state), self.id)
        try:
            self._connection.publish(SYNC_CHANNEL_NAME, payload)
        except redis.RedisError as exc:
            self._log.error("can't publish state: %s", exc)

    def load_cache(self) -> threading.Thread:
        """Read all stored cache entries into ``cache_channel`` in the background."""
        self._log.debug("GetRedisCache")
        thread = threading.Thread(target=self._load_cache, daemon=True)
        thread.start()
        return thread

    def _load_cache(self) -> None:
        try:
            keys = list(self._connection.scan_iter(match=prefix_key("*")))
        except redis.RedisError as exc:
            self._log.error("GetRedisCache %s", exc)
            return
        for raw_key in keys:
            key = raw_key.decode() if isinstance(raw_key, bytes) else raw_key
            try:
                message = self._get_response(key)
            except (redis.RedisError, dns.exception.DNSException, ValueError) as exc:
                self._log.error("GetRedisCache %s", exc)
                continue
            if message is not None:
                self.cache_channel.put(message)

    def _get_response(self, key: str) -> CacheMessage | None:
        value = self._connection.get(key)
        if value is None:
            return None
        if isinstance(value, str):
            value = value.encode("latin-1")
        ttl = self._connection.ttl(key)
        return convert_message(clean_key(key), value, ttl if ttl and ttl > 0 else 0)

    def process_received_message(self, payload: str | bytes) -> None:
        """Handle one message from the sync channel; raise ValueError if it is malformed."""
        try:
            data = json.loads(payload)
            if _b64decode(data.get("c")) == self.id:
                return
            message_type = data.get("t", MESSAGE_TYPE_CACHE)
            body = _b64decode(data.get("m"))
            if message_type == MESSAGE_TYPE_CACHE:
                self.cache_channel.put(convert_message(data.get("k", ""), body, 0))
            elif message_type == MESSAGE_TYPE_ENABLE:
                self.enabled_channel.put(_decode_enabled(body))
            else:
                self._log.warning("Unknown message type: %s", message_type)
        except (ValueError, TypeError, AttributeError, dns.exception.DNSException) as exc:
            self._log.error("Processing error: %s", exc)
            raise ValueError(f"can't process message: {exc}") from exc

    def _publish_from_buffer(self, key: str, message: dns.message.Message) -> None:
        wire = message.to_wire()
        payload = _encode_sync_message(MESSAGE_TYPE_CACHE, wire, self.id, key)
        try:
            self._connection.publish(SYNC_CHANNEL_NAME, payload)
            self._connection.set(prefix_key(key), wire, px=int(get_ttl(message) * 1000))
        except redis.RedisError as exc:
            self._log.error("can't publish cache entry: %s", exc)

    def _receive_loop(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=_POLL_INTERVAL
                )
            except (redis.RedisError, ValueError) as exc:
                self._log.error("can't receive message: %s", exc)
                self._stop.wait(_POLL_INTERVAL)
                continue
            if not message or message.get("type") != "message":
                continue
            self._log.debug("Received message: %s", message)
            data = message.get("data")
            if data:
                try:
                    self.process_received_message(data)
                except ValueError:
                    pass

    def _send_loop(self) -> None:
        while not self._stop.is_set():
            try:
                key, message = self._send_buffer.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            self._publish_from_buffer(key, message)

    def close(self) -> None:
        """Stop the background workers and the subscription."""
        self._stop.set()
        for thread in self._threads:
            thread.join()
        try:
            self._pubsub.close()
        except redis.RedisError:
            pass


def new_client(config: RedisConfig | None) -> RedisClient | None:
    """Connect to redis; return None if no address is configured."""
    if config is None or not config.address:
        return None

    host, sep, port = config.address.rpartition(":")
    if not sep:
        host, port = config.address, "6379"
    password = config.password or None
    connection = redis.Redis(
        host=host,
        port=int(port),
        password=password,
        db=config.database,
        retry=Retry(
            ExponentialBackoff(cap=config.connection_cooldown),
            max(config.connection_attempts, 0),
        ),
        retry_on_error=[redis.exceptions.ConnectionError, redis.exceptions.TimeoutError],
    )
    try:
        connection.ping()
        return RedisClient(config, connection)
    except redis.RedisError:
        connection.close()
        raise