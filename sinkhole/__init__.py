"""Caching resolver, bootstrap resolution, query logging and Redis cache sync for a DNS proxy."""

__version__ = "0.1.0"