"""Resolving host addresses through the proxy."""

from __future__ import annotations

import ipaddress
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional, Union

import dns.message
import dns.rdatatype

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Resolve = Callable[[str, int], Optional[dns.message.Message]]


class EmptyHostError(ValueError):
    """Raised when the host to look up is empty."""

    def __init__(self) -> None:
        super().__init__("host is empty")


def append_answer_addrs(
    addrs: Iterable[IPAddress], answer: Iterable
) -> list[IPAddress]:
    """Return ``addrs`` extended with the addresses of A and AAAA records."""
    result = list(addrs)
    for rrset in answer:
        if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
            continue
        result.extend(ipaddress.ip_address(rd.address) for rd in rrset)
    return result


def lookup_net_ip(
    resolve: Resolve, host: str, prefer_ipv6: bool = False
) -> list[IPAddress]:
    """Resolve A and AAAA records of ``host`` in parallel.

    ``resolve`` takes a fully-qualified name and a query type and returns the
    response, raising on failure.  The addresses are ordered with the preferred
    family first.
    """
    if not host:
        raise EmptyHostError()
    if not host.endswith("."):
        host += "."

    qtypes = (dns.rdatatype.A, dns.rdatatype.AAAA)
    with ThreadPoolExecutor(max_workers=len(qtypes)) as pool:
        futures = [pool.submit(resolve, host, qtype) for qtype in qtypes]

    addrs: list[IPAddress] = []
    errors: list[BaseException] = []
    for future in futures:
        err = future.exception()
        if err is not None:
            errors.append(err)
            continue
        resp = future.result()
        if resp is not None:
            addrs = append_answer_addrs(addrs, resp.answer)

    if not addrs and errors:
        if len(errors) == 1:
            raise errors[0]
        raise errors[-1] from errors[0]

    preferred = 6 if prefer_ipv6 else 4
    addrs.sort(key=lambda addr: addr.version != preferred)
    return addrs