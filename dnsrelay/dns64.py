"""DNS64 synthesis of AAAA records from A records (RFC 6147)."""

from __future__ import annotations

import ipaddress
import logging
import secrets
from typing import Callable, Iterable, Optional, Sequence

import dns.exception
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.reversename
import dns.rrset

logger = logging.getLogger(__name__)

MAX_NAT64_PREFIX_BIT_LEN = 96
"""Maximum length of a NAT64 prefix in bits (RFC 6147, section 5.2)."""

NAT64_PREFIX_LENGTH = 16 - 4
"""Length of a NAT64 prefix in bytes."""

MAX_DNS64_SYN_TTL = 600
"""Maximum TTL of synthesized records when no SOA was received."""

DNS64_WELL_KNOWN_PREFIX = ipaddress.IPv6Network("64:ff9b::/96")
"""Well-Known Prefix for algorithmic mapping (RFC 6052, section 2.1)."""

Exchange = Callable[[dns.message.Message], "tuple[Optional[dns.message.Message], object]"]


def setup_dns64_prefixes(
    use_dns64: bool, prefixes: Optional[Iterable]
) -> list[ipaddress.IPv6Network]:
    """Validate and mask NAT64 prefixes; default to the Well-Known Prefix."""
    if not use_dns64:
        return []

    prefixes = list(prefixes or [])
    if not prefixes:
        return [DNS64_WELL_KNOWN_PREFIX]

    result = []
    for idx, pref in enumerate(prefixes):
        network = ipaddress.ip_network(pref, strict=False)
        if network.version != 6:
            raise ValueError(f"prefix at index {idx}: {str(pref)!r} is not an IPv6 prefix")
        if network.prefixlen > MAX_NAT64_PREFIX_BIT_LEN:
            raise ValueError(f"prefix at index {idx}: {str(pref)!r} is too long for DNS64")
        result.append(network)
    return result


class DNS64:
    """DNS64 handling with a set of NAT64 prefixes; the first one is used to map."""

    def __init__(self, prefixes: Sequence[ipaddress.IPv6Network]) -> None:
        self.prefixes = list(prefixes)

    def _contains(self, addr) -> bool:
        return any(addr in pref for pref in self.prefixes)

    def check(
        self, req: dns.message.Message, resp: dns.message.Message
    ) -> Optional[dns.message.Message]:
        """Return an A request to resolve for DNS64, or None if not needed.

        Also drops answers within the NAT64 prefixes from ``resp``.
        """
        if not self.prefixes:
            return None

        q = req.question[0]
        if q.rdtype != dns.rdatatype.AAAA or q.rdclass != dns.rdataclass.IN:
            # DNS64 for classes other than IN is undefined.
            return None

        rcode = resp.rcode()
        if rcode == dns.rcode.NXDOMAIN:
            return None
        if rcode == dns.rcode.NOERROR:
            resp.answer, has_answers = self.filter_nat64_answers(resp.answer)
            if has_answers:
                return None
        # Any other rcode is treated as NOERROR with an empty answer.

        dns64_req = dns.message.from_wire(req.to_wire())
        dns64_req.id = secrets.randbelow(1 << 16)
        dns64_req.question = [dns.rrset.RRset(q.name, q.rdclass, dns.rdatatype.A)]
        return dns64_req

    def filter_nat64_answers(self, rrsets) -> tuple[list, bool]:
        """Drop AAAA records within the prefixes; report if any answer remains."""
        filtered = []
        has_answers = False
        for rrset in rrsets:
            if rrset.rdtype == dns.rdatatype.AAAA:
                kept = dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype)
                for rd in rrset:
                    addr = ipaddress.IPv6Address(rd.address)
                    if addr.ipv4_mapped is None and self._contains(addr):
                        continue
                    kept.add(rd, rrset.ttl)
                if len(kept) > 0:
                    filtered.append(kept)
                    has_answers = True
            elif rrset.rdtype in (dns.rdatatype.CNAME, dns.rdatatype.DNAME):
                # Chains aren't followed; treat them as passable answers.
                filtered.append(rrset)
                has_answers = True
            else:
                filtered.append(rrset)
        return filtered, has_answers

    def synth(
        self,
        orig_req: dns.message.Message,
        orig_resp: dns.message.Message,
        resp: dns.message.Message,
    ) -> bool:
        """Fill ``orig_resp`` with records synthesized from ``resp``."""
        if not resp.answer:
            return False

        soa_ttl = MAX_DNS64_SYN_TTL
        qname = orig_req.question[0].name
        for rrset in orig_resp.authority:
            if rrset.rdtype == dns.rdatatype.SOA and rrset.name == qname:
                soa_ttl = rrset.ttl
                break

        new_answer = []
        for rrset in resp.answer:
            synthesized = self.synth_rrset(rrset, soa_ttl)
            if synthesized is None:
                return False
            new_answer.append(synthesized)

        orig_resp.answer = new_answer
        orig_resp.authority = list(resp.authority)
        orig_resp.additional = list(resp.additional)
        return True

    def should_strip(self, req: dns.message.Message) -> bool:
        """Tell whether ``req`` is a PTR for an address within a DNS64 prefix."""
        if not self.prefixes:
            return False

        q = req.question[0]
        if q.rdtype != dns.rdatatype.PTR:
            return False

        try:
            ip = ipaddress.ip_address(dns.reversename.to_address(q.name))
        except (dns.exception.DNSException, ValueError) as err:
            logger.debug("failed to parse ip from ptr request: %s", err)
            return False

        if self._contains(ip):
            logger.debug("the ip is within dns64 custom prefix set: %s", ip)
            return True
        if ip in DNS64_WELL_KNOWN_PREFIX:
            logger.debug("the ip is within dns64 well-known prefix: %s", ip)
            return True
        return False

    def map_address(self, addr) -> ipaddress.IPv6Address:
        """Map an IPv4 address into the first configured prefix."""
        if not self.prefixes:
            raise ValueError("no dns64 prefixes configured")
        v4 = ipaddress.IPv4Address(addr)
        prefix = self.prefixes[0].network_address.packed[:NAT64_PREFIX_LENGTH]
        return ipaddress.IPv6Address(prefix + v4.packed)

    def synth_rrset(self, rrset, soa_ttl: int):
        """Turn an A RRset into a synthesized AAAA one; others are returned as is."""
        if rrset.rdtype != dns.rdatatype.A:
            return rrset

        aaaa = dns.rrset.RRset(rrset.name, rrset.rdclass, dns.rdatatype.AAAA)
        ttl = min(rrset.ttl, soa_ttl)
        for rd in rrset:
            try:
                mapped = self.map_address(rd.address)
            except ValueError as err:
                logger.error("bad a record: %s", err)
                return None
            aaaa.add(
                dns.rdata.from_text(rrset.rdclass, dns.rdatatype.AAAA, str(mapped)),
                ttl,
            )
        return aaaa

    def perform(self, orig_req, orig_resp, exchange: Exchange):
        """Run DNS64 for an empty AAAA response; return the upstream used or None.

        ``exchange`` resolves a request and returns the response and the
        upstream that gave it, raising on failure.
        """
        if orig_resp is None:
            return None

        dns64_req = self.check(orig_req, orig_resp)
        if dns64_req is None:
            return None

        host = orig_req.question[0].name
        logger.debug("received an empty aaaa response, checking dns64: %s", host)

        try:
            dns64_resp, upstream = exchange(dns64_req)
        except Exception as err:  # noqa: BLE001 - any failure disables synthesis
            logger.error("dns64 request failed: %s", err)
            return None

        if dns64_resp is not None and self.synth(orig_req, orig_resp, dns64_resp):
            logger.debug("synthesized aaaa response: %s", host)
            return upstream
        return None


import dns.rdata  # noqa: E402  (used by synth_rrset)