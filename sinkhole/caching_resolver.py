"""Resolver that caches answers for their TTL and prefetches popular domains."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import dns.message
import dns.rcode
import dns.rdatatype

from sinkhole.logsetup import prefixed_log
from sinkhole.model import (
    Request,
    Response,
    ResponseType,
    extract_domain,
    new_msg_with_question,
)

DEFAULT_CLEANUP_INTERVAL = 5.0
PREFETCH_CLEANUP_INTERVAL = 60.0

CACHING_RESULT_CACHE_HIT = "caching:resultCacheHit"
CACHING_RESULT_CACHE_MISS = "caching:resultCacheMiss"
CACHING_RESULT_CACHE_CHANGED = "caching:resultCacheChanged"
CACHING_PREFETCH_CACHE_HIT = "caching:prefetchCacheHit"
CACHING_DOMAIN_PREFETCHED = "caching:domainPrefetched"
CACHING_DOMAINS_TO_PREFETCH_COUNT_CHANGED = "caching:domainsToPrefetchCountChanged"

Publisher = Callable[..., None]
OnExpired = Callable[[str], "tuple[Any, float]"]


def generate_cache_key(qtype: Any, domain: str) -> str:
    """Cache key for a query type and domain name."""
    rdtype = dns.rdatatype.RdataType.make(qtype)
    return f"{dns.rdatatype.to_text(rdtype)}:{domain.lower()}"


def extract_cache_key(key: str) -> tuple[dns.rdatatype.RdataType, str]:
    """Split a cache key back into query type and domain name."""
    qtype, _, domain = key.partition(":")
    return dns.rdatatype.RdataType.make(qtype), domain


class ExpiringCache:
    """Size-limited LRU cache whose entries expire after a TTL in seconds.

    Expired entries stay readable (with a remaining TTL of 0) until the next
    clean up, which either refreshes them through ``on_expired`` or drops them.
    """

    def __init__(
        self,
        cleanup_interval: Optional[float] = DEFAULT_CLEANUP_INTERVAL,
        max_size: int = 0,
        on_expired: Optional[OnExpired] = None,
    ) -> None:
        self.max_size = max_size
        self.on_expired = on_expired
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self._log = prefixed_log("expiration_cache")
        if cleanup_interval and cleanup_interval > 0:
            threading.Thread(
                target=self._periodic_clean_up, args=(cleanup_interval,), daemon=True
            ).start()

    def _periodic_clean_up(self, interval: float) -> None:
        stop = threading.Event()
        while not stop.wait(interval):
            try:
                self.clean_up()
            except Exception as exc:  # keep the cleaner alive
                self._log.error("cache clean up failed: %s", exc)

    def put(self, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` for ``ttl`` seconds; a TTL of 0 or less stores nothing."""
        if ttl <= 0:
            return
        expires = time.monotonic() + ttl
        with self._lock:
            self._entries[key] = (value, expires)
            self._entries.move_to_end(key)
            if self.max_size and len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def get(self, key: str) -> tuple[Any, float]:
        """Return the value and its remaining TTL, or ``(None, 0.0)``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, 0.0
            self._entries.move_to_end(key)
        value, expires = entry
        return value, max(0.0, expires - time.monotonic())

    def total_count(self) -> int:
        """Number of entries held, expired ones included."""
        with self._lock:
            return len(self._entries)

    def clean_up(self) -> None:
        """Refresh or remove every expired entry."""
        now = time.monotonic()
        with self._lock:
            expired = [key for key, (_, expires) in self._entries.items() if expires <= now]
        for key in expired:
            value, ttl = (None, 0.0)
            if self.on_expired is not None:
                value, ttl = self.on_expired(key)
            if value is not None and ttl > 0:
                self.put(key, value, ttl)
            else:
                with self._lock:
                    self._entries.pop(key, None)


@dataclass
class CachingConfig:
    """Cache settings; all times are in seconds."""

    min_caching_time: float = 0.0
    max_caching_time: float = 0.0
    cache_time_negative: float = 30 * 60.0
    max_items_count: int = 0
    prefetching: bool = False
    prefetch_expires: float = 2 * 60 * 60.0
    prefetch_threshold: int = 5
    prefetch_max_items_count: int = 0


@dataclass(frozen=True)
class _CacheValue:
    answer: list
    prefetch: bool


def _format_duration(seconds: float) -> str:
    sign = "-" if seconds < 0 else ""
    remaining = int(abs(seconds))
    parts = []
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60), ("second", 1)):
        amount, remaining = divmod(remaining, size)
        if amount:
            parts.append(f"{amount} {unit}{'' if amount == 1 else 's'}")
    return sign + (" ".join(parts) if parts else "0 seconds")


def _bind(logger: Any, **fields: Any) -> Any:
    bind = getattr(logger, "bind", None)
    return bind(**fields) if bind is not None else logger


def _with_prefix(logger: Any, prefix: str) -> Any:
    bind = getattr(logger, "bind", None)
    return bind(prefix=prefix) if bind is not None else prefixed_log(prefix)


class CachingResolver:
    """Answers recurring queries from a cache that honours the records' TTLs."""

    def __init__(
        self,
        config: Optional[CachingConfig] = None,
        redis_client: Any = None,
        publish: Optional[Publisher] = None,
    ) -> None:
        config = config if config is not None else CachingConfig()
        self.min_cache_time_sec = int(config.min_caching_time)
        self.max_cache_time_sec = int(config.max_caching_time)
        self.cache_time_negative = config.cache_time_negative
        self.redis_client = redis_client
        self.next_resolver: Any = None
        self._publish: Optional[Publisher] = publish
        self._log = prefixed_log("caching_resolver")

        self.prefetch_expires = 0.0
        self.prefetch_threshold = 0
        self.prefetching_name_cache: Optional[ExpiringCache] = None
        if config.prefetching:
            self.prefetch_expires = config.prefetch_expires
            self.prefetch_threshold = config.prefetch_threshold
            self.prefetching_name_cache = ExpiringCache(
                PREFETCH_CLEANUP_INTERVAL, config.prefetch_max_items_count
            )
            self.result_cache = ExpiringCache(
                DEFAULT_CLEANUP_INTERVAL, config.max_items_count, self._on_expired
            )
        else:
            self.result_cache = ExpiringCache(DEFAULT_CLEANUP_INTERVAL, config.max_items_count)

        if redis_client is not None:
            threading.Thread(target=self._consume_redis_cache, daemon=True).start()
            redis_client.load_cache()

    def _emit(self, topic: str, *args: Any) -> None:
        if self._publish is not None:
            self._publish(topic, *args)

    def set_next(self, resolver: Any) -> None:
        """Set the resolver that handles cache misses."""
        self.next_resolver = resolver

    def _consume_redis_cache(self) -> None:
        while True:
            message = self.redis_client.cache_channel.get()
            if message is not None:
                self._log.debug("Received key from redis: %s", message.key)
                self.put_in_cache(message.key, message.response, False, False)

    def _is_prefetching_domain(self, cache_key: str) -> bool:
        if self.prefetching_name_cache is None:
            return False
        count, _ = self.prefetching_name_cache.get(cache_key)
        return count is not None and count > self.prefetch_threshold

    def _on_expired(self, cache_key: str) -> tuple[Any, float]:
        qtype, domain = extract_cache_key(cache_key)
        if self._is_prefetching_domain(cache_key):
            self._log.debug("prefetching '%s' (%s)", domain, dns.rdatatype.to_text(qtype))
            request = Request(req=new_msg_with_question(f"{domain}.", qtype), log=self._log)
            try:
                response = self.next_resolver.resolve(request)
            except Exception as exc:
                self._log.error("can't prefetch '%s': %s", domain, exc)
                return None, 0.0
            if response.res.rcode() == dns.rcode.NOERROR:
                self._emit(CACHING_DOMAIN_PREFETCHED, domain)
                answer = response.res.answer
                return _CacheValue(answer, True), float(self._adjust_ttls(answer))
        return None, 0.0

    def configuration(self) -> list[str]:
        """Human-readable description of the current settings."""
        if self.max_cache_time_sec < 0:
            return ["deactivated"]
        prefetching = self.prefetching_name_cache is not None
        result = [
            f"minCacheTimeInSec = {self.min_cache_time_sec}",
            f"maxCacheTimeSec = {self.max_cache_time_sec}",
            f"cacheTimeNegative = {_format_duration(self.cache_time_negative)}",
            f"prefetching = {'true' if prefetching else 'false'}",
        ]
        if prefetching:
            result.append(f"prefetchExpires = {_format_duration(self.prefetch_expires)}")
            result.append(f"prefetchThreshold = {self.prefetch_threshold}")
        result.append(f"cache items count = {self.result_cache.total_count()}")
        return result

    def resolve(self, request: Request) -> Optional[Response]:
        """Answer from the cache or delegate to the next resolver and cache its answer."""
        logger = _with_prefix(request.log, "caching_resolver")
        if self.max_cache_time_sec < 0:
            logger.debug("skip cache")
            return self.next_resolver.resolve(request)

        response: Optional[Response] = None
        for question in request.req.question:
            domain = extract_domain(question)
            cache_key = generate_cache_key(question.rdtype, domain)
            qlog = _bind(logger, domain=domain)

            self._track_query_domain_name_count(domain, cache_key, qlog)

            value, ttl = self.result_cache.get(cache_key)
            if value is not None:
                qlog.debug("domain is cached")
                self._emit(CACHING_RESULT_CACHE_HIT, domain)
                reply = dns.message.make_response(request.req)
                if isinstance(value, _CacheValue):
                    if value.prefetch:
                        self._emit(CACHING_PREFETCH_CACHE_HIT, domain)
                    answer = [rrset.copy() for rrset in value.answer]
                    for rrset in answer:
                        rrset.ttl = int(ttl)
                    reply.answer = answer
                    return Response(res=reply, reason="CACHED", rtype=ResponseType.CACHED)
                reply.set_rcode(value)
                return Response(res=reply, reason="CACHED NEGATIVE", rtype=ResponseType.CACHED)

            self._emit(CACHING_RESULT_CACHE_MISS, domain)
            qlog.debug(
                "not in cache: go to next resolver (%s)", type(self.next_resolver).__name__
            )
            response = self.next_resolver.resolve(request)
            self.put_in_cache(cache_key, response, False, self.redis_client is not None)

        return response

    def _track_query_domain_name_count(self, domain: str, cache_key: str, logger: Any) -> None:
        if self.prefetching_name_cache is None:
            return
        count, _ = self.prefetching_name_cache.get(cache_key)
        count = (count or 0) + 1
        self.prefetching_name_cache.put(cache_key, count, self.prefetch_expires)
        total = self.prefetching_name_cache.total_count()
        logger.debug("domain '%s' was requested %d times, total cache size: %d", domain, count, total)
        self._emit(CACHING_DOMAINS_TO_PREFETCH_COUNT_CHANGED, total)

    def put_in_cache(
        self, cache_key: str, response: Response, prefetch: bool, publish: bool
    ) -> None:
        """Store a positive answer for its TTL or an NXDOMAIN for the negative cache time."""
        answer = response.res.answer
        rcode = response.res.rcode()
        if rcode == dns.rcode.NOERROR:
            self.result_cache.put(
                cache_key, _CacheValue(answer, prefetch), float(self._adjust_ttls(answer))
            )
        elif rcode == dns.rcode.NXDOMAIN and self.cache_time_negative > 0:
            self.result_cache.put(cache_key, rcode, self.cache_time_negative)

        self._emit(CACHING_RESULT_CACHE_CHANGED, self.result_cache.total_count())

        if publish and self.redis_client is not None:
            self.redis_client.publish_cache(cache_key, response.res)

    def _adjust_ttls(self, answer: list) -> int:
        max_ttl = 0
        for rrset in answer:
            if self.min_cache_time_sec > 0 and rrset.ttl < self.min_cache_time_sec:
                rrset.ttl = self.min_cache_time_sec
            if self.max_cache_time_sec > 0 and rrset.ttl > self.max_cache_time_sec:
                rrset.ttl = self.max_cache_time_sec
            max_ttl = max(max_ttl, rrset.ttl)
        return max_ttl