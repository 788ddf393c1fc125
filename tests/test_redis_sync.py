import base64
import fnmatch
import json
import threading
import time
import uuid

import dns.message
import pytest
import redis

from sinkhole.model import ResponseType, new_msg_with_answer
from sinkhole.redis_sync import (
    CACHE_REASON,
    DEFAULT_CACHE_TIME,
    SYNC_CHANNEL_NAME,
    EnabledMessage,
    RedisClient,
    RedisConfig,
    clean_key,
    convert_message,
    get_ttl,
    new_client,
    prefix_key,
)


class _FakePubSub:
    def __init__(self):
        self.channels = []

    def subscribe(self, *channels):
        self.channels.extend(channels)

    def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        time.sleep(min(timeout, 0.01))
        return None

    def close(self):
        self.channels = []


class _FakeRedis:
    def __init__(self):
        self.lock = threading.Lock()
        self.store = {}
        self.expiry = {}
        self.published = []

    def pubsub(self):
        return _FakePubSub()

    def publish(self, channel, message):
        with self.lock:
            self.published.append((channel, message))
        return 1

    def set(self, name, value, px=None):
        with self.lock:
            self.store[name] = value
            self.expiry[name] = px

    def get(self, name):
        with self.lock:
            return self.store.get(name)

    def ttl(self, name):
        return 100

    def scan_iter(self, match="*"):
        with self.lock:
            keys = list(self.store)
        return [key.encode() for key in keys if fnmatch.fnmatchcase(key, match)]


def _eventually(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake():
    return _FakeRedis()


@pytest.fixture
def client(fake):
    c = RedisClient(RedisConfig(address="fake:1"), fake)
    yield c
    c.close()


def _payload(message_type, body, client_id, key=""):
    data = {"t": message_type, "m": base64.b64encode(body).decode(), "c": base64.b64encode(client_id).decode()}
    if key:
        data["k"] = key
    return json.dumps(data)


def test_no_config_means_no_client():
    assert new_client(None) is None
    assert new_client(RedisConfig()) is None


def test_invalid_address_fails():
    with pytest.raises(redis.exceptions.RedisError):
        new_client(RedisConfig(address="127.0.0.1:0", connection_attempts=1, connection_cooldown=0.01))


def test_publish_cache_stores_entry(client, fake):
    res = new_msg_with_answer("example.com.", 123, "A", "123.124.122.123")
    client.publish_cache("example.com", res)

    assert _eventually(lambda: prefix_key("example.com") in fake.store)
    assert fake.expiry[prefix_key("example.com")] == 123000
    stored = dns.message.from_wire(fake.store[prefix_key("example.com")])
    assert stored.answer[0].ttl == 123
    assert _eventually(lambda: len(fake.published) == 1)
    channel, payload = fake.published[0]
    assert channel == SYNC_CHANNEL_NAME
    data = json.loads(payload)
    assert data["t"] == 0
    assert data["k"] == "example.com"


def test_publish_cache_ignores_empty(client, fake):
    client.publish_cache("", new_msg_with_answer("example.com.", 1, "A", "1.1.1.1"))
    client.publish_cache("key", None)
    client.publish_cache("real", new_msg_with_answer("real.com.", 60, "A", "1.1.1.1"))

    assert _eventually(lambda: prefix_key("real") in fake.store)
    assert list(fake.store) == [prefix_key("real")]
    assert _eventually(lambda: len(fake.published) == 1)
    assert json.loads(fake.published[0][1])["k"] == "real"


def test_publish_enabled(client, fake):
    client.publish_enabled(EnabledMessage(state=True))

    assert len(fake.published) == 1
    channel, payload = fake.published[0]
    data = json.loads(payload)
    assert channel == SYNC_CHANNEL_NAME
    assert data["t"] == 1
    assert base64.b64decode(data["c"]) == client.id
    assert json.loads(base64.b64decode(data["m"])) == {"s": True}


def test_received_enabled_message(client):
    body = json.dumps({"s": False, "d": 1_500_000_000, "g": ["gr1"]}).encode()
    before = client.enabled_channel.qsize()
    client.process_received_message(_payload(1, body, uuid.uuid4().bytes))

    assert client.enabled_channel.qsize() == before + 1
    assert client.enabled_channel.get_nowait() == EnabledMessage(
        state=False, duration=1.5, groups=["gr1"]
    )


def test_received_unknown_type_ignored(client):
    enabled_before = client.enabled_channel.qsize()
    cache_before = client.cache_channel.qsize()
    client.process_received_message(_payload(99, b"test", uuid.uuid4().bytes, "unknown"))

    assert client.enabled_channel.qsize() == enabled_before
    assert client.cache_channel.qsize() == cache_before


def test_own_messages_ignored(client):
    body = json.dumps({"s": True}).encode()
    client.process_received_message(_payload(1, body, client.id))
    assert client.enabled_channel.qsize() == 0


def test_received_cache_message(client):
    wire = new_msg_with_answer("example.com.", 123, "A", "123.124.122.123").to_wire()
    client.process_received_message(_payload(0, wire, uuid.uuid4().bytes, "example.com"))

    message = client.cache_channel.get_nowait()
    assert message.key == "example.com"
    assert message.response.rtype is ResponseType.CACHED
    assert message.response.reason == CACHE_REASON


def test_malformed_message_raises(client):
    with pytest.raises(ValueError):
        client.process_received_message("not json")


def test_load_cache(client, fake):
    wire = new_msg_with_answer("example.com.", 123, "A", "123.124.122.123").to_wire()
    fake.set(prefix_key("example.com"), wire)

    client.load_cache().join(timeout=5)

    message = client.cache_channel.get_nowait()
    assert message.key == "example.com"
    assert message.response.res.answer[0].ttl == 100


def test_convert_message_sets_ttl():
    wire = new_msg_with_answer("example.com.", 123, "A", "1.2.3.4").to_wire()
    assert convert_message("k", wire, 42).response.res.answer[0].ttl == 42
    assert convert_message("k", wire, 0).response.res.answer[0].ttl == 123


def test_get_ttl():
    assert get_ttl(new_msg_with_answer("example.com.", 300, "A", "1.2.3.4")) == 300
    assert get_ttl(dns.message.Message()) == DEFAULT_CACHE_TIME


def test_key_prefix_round_trip():
    assert prefix_key("example.com") == "blocky:cache:example.com"
    assert clean_key(prefix_key("example.com")) == "example.com"
    assert clean_key("other") == "other"