# sinkhole

Building blocks for a DNS proxy. The package provides pieces that sit in a
resolver chain or next to it:

- `sinkhole.caching_resolver.CachingResolver` caches answers for their TTL,
  clamped between a minimum and maximum caching time (`CachingConfig`, all
  times in seconds). NXDOMAIN answers are cached for `cache_time_negative`
  seconds. With `prefetching` enabled, domains queried more than
  `prefetch_threshold` times are resolved again when their entry expires. A
  negative `max_caching_time` turns caching off. An optional `publish`
  callback receives event topics such as `caching:resultCacheHit` together
  with their values. `ExpiringCache` is the size-limited, TTL-based cache it
  is built on.
- `sinkhole.bootstrap.Bootstrap` resolves upstream host names, either through
  a bootstrap resolver you pass in or, when `BootstrapConfig` is left empty,
  through the system resolver. For `net="tcp+udp"` the host must be an IP
  address; for any other protocol `ips` must be given. `create_connection`
  opens a TCP connection to `host:port`, resolving the host the same way.
  `IPSet` holds a rotating set of addresses.
- `sinkhole.redis_sync` shares cache entries and blocking state changes
  between instances through a Redis channel (`blocky_sync`) and stores cache
  entries under keys prefixed with `blocky:cache:`. `new_client(RedisConfig(...))`
  returns `None` when no address is configured. Received entries arrive on
  the client's `cache_channel` and `enabled_channel` queues.
- `sinkhole.querylog` writes query logs:
  - `writers.NoneWriter` discards entries,
  - `writers.LoggerWriter` emits each entry as a log record,
  - `file_writer.FileWriter` (or `new_csv_writer`) appends tab-separated rows
    to `<date>_ALL.log`, or to one file per client name, and deletes files
    older than the retention period in `clean_up()`,
  - `database_writer.DatabaseWriter` buffers entries and writes them in bulk
    to a `log_entries` table through any SQLAlchemy engine;
    `new_database_writer("mysql" | "postgresql", target, ...)` creates the
    engine for you.
- `sinkhole.model` holds `Request`, `Response`, the `ResponseType` and
  `RequestProtocol` enums and helpers to build and print DNS messages.
- `sinkhole.logsetup` configures the package logger: `configure_logger`,
  `prefixed_log`, `silence`, and the `Level` and `FormatType` enums.

## Installation

```
pip install .
```

Using `new_database_writer` with MySQL or PostgreSQL also needs a SQLAlchemy
driver for that database, which is not installed with the package.

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from sinkhole.caching_resolver import CachingConfig, CachingResolver
from sinkhole.model import Request, new_msg_with_question

cache = CachingResolver(CachingConfig(min_caching_time=300))
cache.set_next(upstream_resolver)   # any object with a resolve(request) method

request = Request(req=new_msg_with_question("example.com.", "A"))
response = cache.resolve(request)
print(response.rtype, response.reason)
```

Logging is configured once for the whole package:

```python
from sinkhole.logsetup import FormatType, Level, configure_logger

configure_logger(Level.DEBUG, FormatType.TEXT, True)
```

## What the package does not do

- It does not block queries: there is no black- or whitelist resolver and no
  list downloading.
- It does not include a resolver that sends queries to an upstream DNS server;
  `CachingResolver` and `Bootstrap` are given one.
- It has no DNS server, no HTTP API, no metrics endpoint and no command-line
  program. It is a library to be wired into such a program.