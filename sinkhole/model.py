"""DNS request and response model and message helpers."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator

import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from sinkhole.logsetup import prefixed_log


class ResponseType(enum.Enum):
    """How a response was produced."""

    RESOLVED = 0  # resolved by the external upstream resolver
    CACHED = 1  # resolved from cache
    BLOCKED = 2  # the query was blocked
    CONDITIONAL = 3  # resolved by the conditional upstream resolver
    CUSTOMDNS = 4  # resolved by a custom rule
    HOSTSFILE = 5  # resolved by looking up the hosts file
    FILTERED = 6  # filtered by query type
    NOTFQDN = 7  # filtered as it is not fqdn conform

    def __str__(self) -> str:
        return self.name


class RequestProtocol(enum.Enum):
    """Server protocol a request arrived on."""

    TCP = 0
    UDP = 1

    def __str__(self) -> str:
        return self.name


def _parse(enum_cls: type[enum.Enum], name: str) -> Any:
    for member in enum_cls:
        if str(member) == name:
            return member
    choices = ", ".join(str(member) for member in enum_cls)
    raise ValueError(f"{name} is not a valid {enum_cls.__name__}, try [{choices}]")


def parse_response_type(name: str) -> ResponseType:
    """Return the ResponseType called ``name``; raise ValueError if there is none."""
    return _parse(ResponseType, name)


def parse_request_protocol(name: str) -> RequestProtocol:
    """Return the RequestProtocol called ``name``; raise ValueError if there is none."""
    return _parse(RequestProtocol, name)


def response_type_names() -> list[str]:
    """All response type names, in declaration order."""
    return [str(member) for member in ResponseType]


def request_protocol_names() -> list[str]:
    """All request protocol names, in declaration order."""
    return [str(member) for member in RequestProtocol]


@dataclass
class Response:
    """The response to a DNS query."""

    res: dns.message.Message
    reason: str = ""
    rtype: ResponseType = ResponseType.RESOLVED


@dataclass
class Request:
    """A client's DNS request."""

    client_ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = None
    request_client_id: str = ""
    protocol: RequestProtocol = RequestProtocol.TCP
    client_names: list[str] = field(default_factory=list)
    req: dns.message.Message | None = None
    log: Any = field(default_factory=lambda: prefixed_log("request"))
    request_ts: datetime | None = None


def _rdtype(qtype: Any) -> dns.rdatatype.RdataType:
    return dns.rdatatype.RdataType.make(qtype)


def new_msg_with_question(name: str, qtype: Any) -> dns.message.Message:
    """Build a recursive query for ``name`` with the given query type."""
    return dns.message.make_query(name, _rdtype(qtype))


def new_msg_with_answer(name: str, ttl: int, qtype: Any, value: str) -> dns.message.Message:
    """Build a message whose answer section holds one record parsed from ``value``."""
    rrset = dns.rrset.from_text(name, ttl, dns.rdataclass.IN, _rdtype(qtype), value)
    message = dns.message.Message()
    message.answer.append(rrset)
    return message


def extract_domain(question: Any) -> str:
    """Lower-cased name of a question (or name) without the trailing dot."""
    name = getattr(question, "name", question)
    text = name.to_text() if isinstance(name, dns.name.Name) else str(name)
    text = text.lower()
    return text[:-1] if text.endswith(".") else text


def question_to_string(questions: Iterable[Any]) -> str:
    """Readable form of a question section, e.g. ``A (example.com.)``."""
    return ", ".join(
        f"{dns.rdatatype.to_text(q.rdtype)} ({q.name.to_text()})" for q in questions
    )


def _records(answers: Iterable[Any]) -> Iterator[tuple[Any, Any]]:
    for rrset in answers:
        for rdata in rrset:
            yield rrset, rdata


def _record_text(rrset: Any, rdata: Any) -> str:
    rdtype = rdata.rdtype
    if rdtype == dns.rdatatype.A:
        return f"A ({rdata.address})"
    if rdtype == dns.rdatatype.AAAA:
        return f"AAAA ({rdata.address})"
    if rdtype == dns.rdatatype.CNAME:
        return f"CNAME ({rdata.target.to_text()})"
    if rdtype == dns.rdatatype.PTR:
        return f"PTR ({rdata.target.to_text()})"
    return "\t".join(
        (
            rrset.name.to_text(),
            str(rrset.ttl),
            dns.rdataclass.to_text(rrset.rdclass),
            dns.rdatatype.to_text(rdtype),
            rdata.to_text(),
        )
    )


def answer_to_string(answers: Iterable[Any]) -> str:
    """Readable form of an answer section, records joined by ``", "``."""
    return ", ".join(_record_text(rrset, rdata) for rrset, rdata in _records(answers))