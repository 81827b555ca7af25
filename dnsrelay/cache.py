"""Response cache keyed by question and, optionally, client subnet."""

from __future__ import annotations

import ipaddress
import logging
import struct
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Union

import dns.exception
import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from dnsrelay.clock import Clock, RealClock

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 64 * 1024
"""Default maximum cache size in bytes."""

OPTIMISTIC_TTL = 10
"""TTL in seconds given to expired items served optimistically."""

SERVFAIL_MAX_CACHE_TTL = 30
"""Maximum TTL in seconds for cached SERVFAIL responses."""

_MAX_UINT32 = 0xFFFFFFFF
_EXP_TIME_SZ = 4
_MSG_LEN_SZ = 2
_MIN_PACKED_LEN = _EXP_TIME_SZ + _MSG_LEN_SZ
_KEY_MASK_INDEX = 1 + 2 * _MSG_LEN_SZ
_KEY_IP_INDEX = _KEY_MASK_INDEX + 1

_DNSSEC_TYPES = frozenset(
    {
        dns.rdatatype.NSEC,
        dns.rdatatype.NSEC3,
        dns.rdatatype.DS,
        dns.rdatatype.RRSIG,
        dns.rdatatype.SIG,
        dns.rdatatype.DNSKEY,
    }
)

Subnet = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _upstream_address(upstream) -> str:
    if upstream is None:
        return ""
    if isinstance(upstream, str):
        return upstream
    address = upstream.address
    return address() if callable(address) else address


def _unix_now(clock: Clock) -> int:
    return int(clock.now().timestamp())


class _LRUStore:
    """Byte-bounded LRU map of bytes to bytes."""

    def __init__(self, max_size: int) -> None:
        self._max_size = max_size
        self._size = 0
        self._data: OrderedDict[bytes, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: bytes) -> Optional[bytes]:
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
            return value

    def set(self, key: bytes, value: bytes) -> None:
        need = len(key) + len(value)
        with self._lock:
            self._remove(key)
            if need > self._max_size:
                return
            while self._size + need > self._max_size and self._data:
                old_key, old_val = self._data.popitem(last=False)
                self._size -= len(old_key) + len(old_val)
            self._data[key] = value
            self._size += need

    def delete(self, key: bytes) -> None:
        with self._lock:
            self._remove(key)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._size = 0

    def _remove(self, key: bytes) -> None:
        old = self._data.pop(key, None)
        if old is not None:
            self._size -= len(key) + len(old)


@dataclass
class CacheItem:
    """A cached response with the address of the upstream that produced it."""

    msg: dns.message.Message
    upstream: str = ""
    ttl: int = 0

    def pack(self, now: int) -> bytes:
        """Serialize the item, with expiry computed from ``now`` (unix seconds)."""
        wire = self.msg.to_wire()
        header = struct.pack(
            ">IH", (int(now) + self.ttl) & _MAX_UINT32, len(wire) & 0xFFFF
        )
        return header + wire + self.upstream.encode()


class ResponseCache:
    """Cache of DNS responses with optional subnet-aware storage."""

    def __init__(
        self,
        size: int = DEFAULT_CACHE_SIZE,
        with_ecs: bool = False,
        optimistic: bool = False,
        clock: Optional[Clock] = None,
    ) -> None:
        max_size = size if size > 0 else DEFAULT_CACHE_SIZE
        self.optimistic = optimistic
        self.clock = clock if clock is not None else RealClock()
        self._items = _LRUStore(max_size)
        self._items_with_subnet = _LRUStore(max_size) if with_ecs else None

    def _resp_to_item(self, msg, upstream) -> Optional[CacheItem]:
        ttl = cache_ttl(msg)
        if ttl == 0:
            return None
        return CacheItem(msg=msg, upstream=_upstream_address(upstream), ttl=ttl)

    def unpack_item(
        self, data: bytes, req: dns.message.Message
    ) -> tuple[Optional[CacheItem], bool]:
        """Decode stored data into an item answering ``req``; also report expiry."""
        if len(data) < _MIN_PACKED_LEN:
            return None, False

        expire, length = struct.unpack_from(">IH", data)
        now = _unix_now(self.clock)
        expired = expire <= now
        if expired:
            if not self.optimistic:
                return None, True
            ttl = OPTIMISTIC_TTL
        else:
            ttl = expire - now

        if length == 0:
            return None, expired

        body = data[_MIN_PACKED_LEN : _MIN_PACKED_LEN + length]
        try:
            cached = dns.message.from_wire(body)
        except (dns.exception.DNSException, ValueError):
            return None, expired

        res = dns.message.Message(id=req.id)
        res.flags = dns.flags.QR
        res.set_opcode(req.opcode())
        if req.opcode() == dns.opcode.QUERY:
            res.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
        q = req.question[0]
        res.question = [dns.rrset.RRset(q.name, q.rdclass, q.rdtype)]
        res.set_rcode(cached.rcode())
        res.flags |= cached.flags & (dns.flags.AD | dns.flags.RA)

        do_bit = req.edns >= 0 and bool(req.ednsflags & dns.flags.DO)
        ad_bit = bool(req.flags & dns.flags.AD)
        filter_msg(res, cached, ad_bit, do_bit, ttl)

        upstream = data[_MIN_PACKED_LEN + length :].decode(errors="replace")
        return CacheItem(msg=res, upstream=upstream), expired

    def get(self, req) -> tuple[Optional[CacheItem], bool, Optional[bytes]]:
        """Look up ``req``; return the item, whether it expired, and the key."""
        if not _can_look_up(self._items, req):
            return None, False, None
        key = msg_to_key(req)
        data = self._items.get(key)
        if data is None:
            return None, False, key
        item, expired = self.unpack_item(data, req)
        if item is None:
            self._items.delete(key)
        return item, expired, key

    def get_with_subnet(
        self, req, subnet: Optional[Subnet]
    ) -> tuple[Optional[CacheItem], bool, Optional[bytes]]:
        """Look up ``req`` by longest matching prefix of ``subnet``."""
        store = self._items_with_subnet
        if not _can_look_up(store, req):
            return None, False, None

        ecs_ip, mask = _subnet_parts(subnet)
        ip_len = len(ecs_ip)
        key = bytearray(msg_to_key_with_subnet(req, ecs_ip, mask))
        data = store.get(bytes(key))

        bitmask = 0xFF
        while mask >= 0 and data is None:
            key[_KEY_MASK_INDEX] = mask
            if mask == 0:
                del key[_KEY_IP_INDEX : _KEY_IP_INDEX + ip_len]
                data = store.get(bytes(key))
                mask -= 1
                continue
            bitmask = 0xFF if mask % 8 == 0 else (bitmask << 1) & 0xFF
            key[_KEY_IP_INDEX + mask // 8] &= bitmask
            data = store.get(bytes(key))
            mask -= 1

        final_key = bytes(key)
        if data is None:
            return None, False, final_key
        item, expired = self.unpack_item(data, req)
        if item is None:
            store.delete(final_key)
        return item, expired, final_key

    def set(self, msg, upstream) -> None:
        """Store ``msg`` resolved by ``upstream`` if it's cacheable."""
        item = self._resp_to_item(msg, upstream)
        if item is None:
            return
        self._items.set(msg_to_key(msg), item.pack(_unix_now(self.clock)))

    def set_with_subnet(self, msg, upstream, subnet: Optional[Subnet]) -> None:
        """Store ``msg`` under the key derived from ``subnet``."""
        if self._items_with_subnet is None:
            return
        item = self._resp_to_item(msg, upstream)
        if item is None:
            return
        ecs_ip, mask = _subnet_parts(subnet)
        key = msg_to_key_with_subnet(msg, ecs_ip, mask)
        self._items_with_subnet.set(key, item.pack(_unix_now(self.clock)))

    def clear_items(self) -> None:
        """Empty the plain cache."""
        self._items.clear()

    def clear_items_with_subnet(self) -> None:
        """Empty the subnet cache, if there is one."""
        if self._items_with_subnet is not None:
            self._items_with_subnet.clear()


def _subnet_parts(subnet: Optional[Subnet]) -> tuple[bytes, int]:
    if subnet is None:
        return b"", 0
    return subnet.network_address.packed, subnet.prefixlen


def _can_look_up(store, req) -> bool:
    return store is not None and req is not None and len(req.question) == 1


def cache_ttl(msg) -> int:
    """Return how many seconds ``msg`` may be cached, following RFC 2308."""
    if msg is None:
        return 0
    if msg.flags & dns.flags.TC:
        logger.debug("truncated message; not caching")
        return 0
    if len(msg.question) != 1:
        logger.debug("message with wrong number of questions; not caching")
        return 0
    ttl = calculate_ttl(msg)
    if ttl == 0:
        logger.debug("ttl calculated to be 0; not caching")
        return 0

    rcode = msg.rcode()
    if rcode == dns.rcode.NOERROR:
        if _is_cacheable_succeeded(msg):
            return ttl
        logger.debug("not a cacheable noerror response; not caching")
    elif rcode == dns.rcode.NXDOMAIN:
        if _is_cacheable_negative(msg):
            return ttl
        logger.debug("not a cacheable nxdomain response; not caching")
    elif rcode == dns.rcode.SERVFAIL:
        return ttl
    else:
        logger.debug("response code %s; not caching", dns.rcode.to_text(rcode))
    return 0


def _has_ip_answer(msg) -> bool:
    return any(
        rrset.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA) for rrset in msg.answer
    )


def _is_cacheable_succeeded(msg) -> bool:
    qtype = msg.question[0].rdtype
    return (
        qtype not in (dns.rdatatype.A, dns.rdatatype.AAAA)
        or _has_ip_answer(msg)
        or _is_cacheable_negative(msg)
    )


def _is_cacheable_negative(msg) -> bool:
    ok = False
    for rrset in msg.authority:
        if rrset.rdtype == dns.rdatatype.SOA:
            ok = True
        elif rrset.rdtype == dns.rdatatype.NS:
            return False
    return ok


def calculate_ttl(msg) -> int:
    """Return the lowest TTL of ``msg``'s records, or 0 if none apply."""
    ttl = _MAX_UINT32
    for section in (msg.answer, msg.authority, msg.additional):
        for rrset in section:
            if rrset.rdtype == dns.rdatatype.OPT:
                continue
            ttl = min(ttl, rrset.ttl)
            if ttl == 0:
                return 0
    if msg.rcode() == dns.rcode.SERVFAIL and ttl > SERVFAIL_MAX_CACHE_TTL:
        return SERVFAIL_MAX_CACHE_TTL
    if ttl == _MAX_UINT32:
        return 0
    return ttl


def respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    """Clamp ``ttl`` into [min_ttl, max_ttl]; a zero max means no upper bound."""
    if ttl < min_ttl:
        return min_ttl
    if max_ttl != 0 and ttl > max_ttl:
        return max_ttl
    return ttl


def _qname(q) -> bytes:
    return q.name.to_text().lower().encode()


def msg_to_key(msg) -> bytes:
    """Build the cache key from the question's type, class and name."""
    q = msg.question[0]
    return struct.pack(">HH", q.rdtype, q.rdclass) + _qname(q)


def msg_to_key_with_subnet(msg, ecs_ip, mask: int) -> bytes:
    """Build the subnet cache key; ``ecs_ip`` must be masked already."""
    if isinstance(ecs_ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ecs_ip = ecs_ip.packed
    ecs_ip = bytes(ecs_ip or b"")
    q = msg.question[0]
    key = bytearray(_KEY_IP_INDEX)
    key[0] = 1 if msg.edns >= 0 and msg.ednsflags & dns.flags.DO else 0
    # The type is written over the DO byte, as the stored format expects.
    key[0:2] = struct.pack(">H", q.rdtype)
    key[1 + _MSG_LEN_SZ : 1 + 2 * _MSG_LEN_SZ] = struct.pack(">H", q.rdclass)
    key[_KEY_MASK_INDEX] = mask & 0xFF
    if mask != 0:
        key += ecs_ip
    key += _qname(q)
    return bytes(key)


def is_dnssec(rdtype: int) -> bool:
    """Tell whether ``rdtype`` is a DNSSEC record type."""
    return rdtype in _DNSSEC_TYPES


def _filter_rrsets(rrsets, do: bool, ttl: int, keep: int) -> list:
    filtered = []
    for rrset in rrsets:
        rdtype = rrset.rdtype
        if rdtype == dns.rdatatype.OPT or (
            not do and is_dnssec(rdtype) and rdtype != keep
        ):
            continue
        copy = rrset.copy()
        if ttl != 0:
            copy.ttl = ttl
        filtered.append(copy)
    return filtered


def filter_msg(dst, msg, ad: bool, do: bool, ttl: int) -> None:
    """Copy ``msg``'s sections into ``dst`` without OPT and unrequested DNSSEC RRs."""
    if not (ad or do):
        dst.flags &= ~dns.flags.AD
    dst.answer = _filter_rrsets(msg.answer, do, ttl, msg.question[0].rdtype)
    dst.authority = _filter_rrsets(msg.authority, do, ttl, dns.rdatatype.NONE)
    dst.additional = _filter_rrsets(msg.additional, do, ttl, dns.rdatatype.NONE)