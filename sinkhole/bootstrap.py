"""Resolving host names of upstream servers through a bootstrap DNS server."""

from __future__ import annotations

import concurrent.futures
import ipaddress
import random
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

import dns.rcode
import dns.rdatatype

from sinkhole.logsetup import prefixed_log
from sinkhole.model import Request, new_msg_with_question

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
SystemLookup = Callable[[str, int, Optional[float]], "list[IPAddress]"]

NET_TCP_UDP = "tcp+udp"
V4V6_QTYPES = (dns.rdatatype.A, dns.rdatatype.AAAA)


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _system_lookup(host: str, family: int, timeout: Optional[float]) -> list[IPAddress]:
    def lookup() -> list[IPAddress]:
        found: list[IPAddress] = []
        for info in socket.getaddrinfo(host, None, family, socket.SOCK_STREAM):
            ip = ipaddress.ip_address(str(info[4][0]).split("%")[0])
            if ip not in found:
                found.append(ip)
        return found

    if timeout is None:
        return lookup()
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        return executor.submit(lookup).result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        raise TimeoutError(f"lookup of {host} timed out") from exc
    finally:
        executor.shutdown(wait=False)


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or not address[end + 1:].startswith(":"):
            raise ValueError(f"address {address}: missing port in address")
        return address[1:end], address[end + 2:]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {address}: too many colons in address")
    return host, port


@dataclass
class BootstrapConfig:
    """Bootstrap upstream settings; an empty ``net`` and ``host`` means none."""

    net: str = ""
    host: str = ""
    ips: list = field(default_factory=list)
    start_verify_upstream: bool = False
    filtered_query_types: set = field(default_factory=set)
    upstream_timeout: float = 0.0

    @property
    def is_default(self) -> bool:
        return not self.net and not self.host


class IPSet:
    """A rotating set of IP addresses."""

    def __init__(self, values: Iterable[IPAddress]) -> None:
        self.values = list(values)
        self._index = 0
        self._lock = threading.Lock()

    def current(self) -> IPAddress:
        """The address currently in use."""
        with self._lock:
            return self.values[self._index]

    def next(self) -> None:
        """Move on to the following address, wrapping around."""
        with self._lock:
            self._index = (self._index + 1) % len(self.values)


class Bootstrap:
    """Resolves host names with the configured bootstrap DNS or the system resolver.

    ``resolver`` is the resolver chain used for bootstrap lookups; ``upstream``
    may be set to the upstream resolver that is part of that chain, which then
    uses the configured bootstrap IPs instead of a lookup.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        resolver: Any = None,
        system_lookup: Optional[SystemLookup] = None,
    ) -> None:
        self.config = config
        self.log = prefixed_log("bootstrap")
        self.start_verify_upstream = config.start_verify_upstream
        self.system_lookup = system_lookup if system_lookup is not None else _system_lookup
        self.upstream: Any = None

        ips: list[IPAddress] = []
        if config.is_default:
            self.log.info("bootstrapDns is not configured, will use system resolver")
        elif config.net == NET_TCP_UDP:
            ip = _parse_ip(config.host)
            if ip is None:
                raise ValueError(f"bootstrapDns uses {config.net} but is not an IP")
            ips.append(ip)
        else:
            ips = [ipaddress.ip_address(str(ip)) for ip in config.ips]
            if not ips:
                raise ValueError(f"bootstrapDns.IPs is required when upstream uses {config.net}")

        if not config.is_default and resolver is None:
            raise ValueError("a bootstrap resolver is required when bootstrapDns is configured")

        self.bootstrap_ips = ips
        self.resolver = None if config.is_default else resolver

    def upstream_ips(self, resolver: Any, host: str) -> IPSet:
        """Addresses of the upstream server ``host`` used by ``resolver``."""
        return IPSet(self.resolve_upstream(resolver, host))

    def resolve_upstream(self, resolver: Any, host: str) -> list[IPAddress]:
        """Resolve ``host`` for ``resolver`` without recursing into itself."""
        if self.resolver is None:
            filtered = {dns.rdatatype.RdataType.make(t) for t in self.config.filtered_query_types}
            family = socket.AF_UNSPEC
            if dns.rdatatype.AAAA in filtered:
                family = socket.AF_INET
            elif dns.rdatatype.A in filtered:
                family = socket.AF_INET6
            timeout = self.config.upstream_timeout or None
            return self.system_lookup(host, family, timeout)

        if resolver is not None and resolver is self.upstream:
            return list(self.bootstrap_ips)

        return self.resolve(host, V4V6_QTYPES)

    def resolve(self, hostname: str, qtypes: Iterable[Any]) -> list[IPAddress]:
        """Addresses of ``hostname`` for all query types; raise LookupError on failure."""
        ips: list[IPAddress] = []
        errors: list[Exception] = []
        for qtype in qtypes:
            try:
                ips.extend(self.resolve_type(hostname, qtype))
            except Exception as exc:
                errors.append(exc)

        if errors:
            details = "; ".join(str(exc) for exc in errors)
            raise LookupError(f"can't resolve {hostname}: {details}") from errors[0]
        if not ips:
            raise LookupError(f"no such host {hostname}")
        return ips

    def resolve_type(self, hostname: str, qtype: Any) -> list[IPAddress]:
        """Addresses of ``hostname`` for one query type; empty if the answer is not NOERROR."""
        ip = _parse_ip(hostname)
        if ip is not None:
            return [ip]

        request = Request(req=new_msg_with_question(hostname, qtype), log=self.log)
        response = self.resolver.resolve(request)
        if response.res.rcode() != dns.rcode.NOERROR:
            return []

        return [
            ipaddress.ip_address(rdata.address)
            for rrset in response.res.answer
            if rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
            for rdata in rrset
        ]

    def create_connection(self, network: str, address: str) -> socket.socket:
        """Open a TCP connection to ``host:port``, resolving the host through bootstrap."""
        log = self.log.bind(network=network, addr=address)
        try:
            host, port = _split_host_port(address)
        except ValueError as exc:
            log.error("dial error: %s", exc)
            raise

        if self.resolver is None:
            return socket.create_connection((host, int(port)))

        filtered = {dns.rdatatype.RdataType.make(t) for t in self.config.filtered_query_types}
        if network.endswith("4") or dns.rdatatype.AAAA in filtered:
            qtypes: tuple = (dns.rdatatype.A,)
        elif network.endswith("6") or dns.rdatatype.A in filtered:
            qtypes = (dns.rdatatype.AAAA,)
        else:
            qtypes = V4V6_QTYPES

        try:
            ips = self.resolve(host, qtypes)
        except LookupError as exc:
            log.error("resolve error: %s", exc)
            raise

        ip = random.choice(ips)
        log.bind(ip=str(ip)).trace("dialing %s", host)
        return socket.create_connection((str(ip), int(port)))