"""Per-request context and custom upstream configuration."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

import dns.flags
import dns.message
import dns.rrset

from dnsrelay.cache import ResponseCache

DEFAULT_UDP_BUF_SIZE = 2048
"""UDP buffer size assumed when the request carries no EDNS0 record."""

MIN_MSG_SIZE = 512
"""Minimal size of a DNS message over UDP."""

MAX_MSG_SIZE = 65535
"""Largest possible DNS message."""


class Proto(str, enum.Enum):
    """Protocol a request was received over."""

    UDP = "udp"
    TCP = "tcp"
    TLS = "tls"
    HTTPS = "https"
    QUIC = "quic"
    DNSCRYPT = "dnscrypt"


class DoQVersion(enum.IntEnum):
    """Supported DNS-over-QUIC protocol versions."""

    V1_DRAFT = 0x00
    V1 = 0x01


@dataclass
class DNSContext:
    """State of a single DNS request while it's being processed."""

    proto: Proto = Proto.UDP
    req: Optional[dns.message.Message] = None
    res: Optional[dns.message.Message] = None
    addr: Optional[tuple[str, int]] = None
    upstream: Any = None
    cached_upstream_addr: str = ""
    req_ecs: Optional[ipaddress.IPv4Network | ipaddress.IPv6Network] = None
    custom_upstream_config: Optional["CustomUpstreamConfig"] = None
    requested_private_rdns: Optional[
        ipaddress.IPv4Network | ipaddress.IPv6Network
    ] = None
    local_ip: Optional[ipaddress.IPv4Address | ipaddress.IPv6Address] = None
    query_duration: timedelta = timedelta(0)
    doq_version: DoQVersion = DoQVersion.V1_DRAFT
    request_id: int = 0
    is_private_client: bool = False
    conn: Any = None
    quic_connection: Any = None
    quic_stream: Any = None
    dnscrypt_response_writer: Any = None
    http_response_writer: Any = None
    http_request: Any = None

    udp_size: int = field(default=0, init=False)
    ad_bit: bool = field(default=False, init=False)
    has_edns0: bool = field(default=False, init=False)
    do_bit: bool = field(default=False, init=False)

    def calc_flags_and_size(self) -> None:
        """Compute the request's flags and advertised UDP size once."""
        if self.udp_size != 0 or self.req is None:
            return

        self.ad_bit = bool(self.req.flags & dns.flags.AD)
        self.udp_size = DEFAULT_UDP_BUF_SIZE
        if self.req.edns >= 0:
            self.has_edns0 = True
            self.do_bit = bool(self.req.ednsflags & dns.flags.DO)
            self.udp_size = self.req.payload

    def scrub(self) -> None:
        """Prepare the response to be written, truncating it if needed."""
        if self.res is None or self.req is None:
            return

        self.calc_flags_and_size()

        # A response mustn't carry EDNS0 unless the request did (RFC 6891),
        # and should when it did.
        if self.has_edns0 and self.res.edns < 0:
            self.res.use_edns(
                0, dns.flags.DO if self.do_bit else 0, self.udp_size
            )

        _truncate(self.res, dns_size(self.proto == Proto.UDP, self.req))


def dns_size(is_udp: bool, req: dns.message.Message) -> int:
    """Return the response size limit the request allows."""
    if not is_udp:
        return MAX_MSG_SIZE
    size = req.payload if req.edns >= 0 else 0
    return max(MIN_MSG_SIZE, size)


def _truncate(msg: dns.message.Message, size: int) -> None:
    """Drop trailing records of ``msg`` so that it fits into ``size`` bytes."""
    size = min(max(size, MIN_MSG_SIZE), MAX_MSG_SIZE)
    if len(msg.to_wire()) <= size:
        return

    sections = (msg.answer, msg.authority, msg.additional)
    originals = [list(section) for section in sections]
    for section in sections:
        section.clear()

    dropped = [0, 0, 0]
    full = False
    for idx, (section, rrsets) in enumerate(zip(sections, originals)):
        for rrset in rrsets:
            if full:
                dropped[idx] += len(rrset)
                continue
            target = dns.rrset.RRset(
                rrset.name, rrset.rdclass, rrset.rdtype, rrset.covers
            )
            section.append(target)
            for rd in rrset:
                if full:
                    dropped[idx] += 1
                    continue
                target.add(rd, rrset.ttl)
                if len(msg.to_wire()) > size:
                    target.discard(rd)
                    dropped[idx] += 1
                    full = True
            if len(target) == 0:
                section.remove(target)

    if dropped[0] or dropped[1]:
        msg.flags |= dns.flags.TC


class CustomUpstreamConfig:
    """Upstream configuration for particular requests, with an optional cache."""

    def __init__(
        self,
        upstream_config: Any,
        cache_enabled: bool = False,
        cache_size: int = 0,
        enable_ecs: bool = False,
    ) -> None:
        self.upstream_config = upstream_config
        self.cache: Optional[ResponseCache] = (
            ResponseCache(cache_size, enable_ecs, False) if cache_enabled else None
        )

    def close(self) -> None:
        """Close the underlying upstream configuration, if any."""
        if self.upstream_config is None:
            return
        self.upstream_config.close()

    def clear_cache(self) -> None:
        """Remove all the items from the cache."""
        if self.cache is None:
            return
        self.cache.clear_items()
        self.cache.clear_items_with_subnet()