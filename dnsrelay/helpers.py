"""EDNS Client Subnet helpers."""

from __future__ import annotations

import ipaddress
from typing import Optional, Union

import dns.edns
import dns.message

Subnet = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_DEFAULT_ECS_V4 = 24
"""Default network mask length for an IPv4 address in the ECS option."""

_DEFAULT_ECS_V6 = 56
"""Default network mask length for an IPv6 address in the ECS option.

Seven octets is a reasonable minimum: some public resolvers refuse requests
with longer masks.
"""

_ECS_PAYLOAD = 4096

_FAMILY_IPV4 = 1
_FAMILY_IPV6 = 2


def ecs_from_msg(msg: dns.message.Message) -> tuple[Optional[Subnet], int]:
    """Return the subnet and scope from the first ECS option of ``msg``."""
    if msg.edns < 0:
        return None, 0

    for option in msg.options:
        if not isinstance(option, dns.edns.ECSOption):
            continue
        if option.family not in (_FAMILY_IPV4, _FAMILY_IPV6):
            continue
        try:
            subnet = ipaddress.ip_network(
                f"{option.address}/{option.srclen}", strict=False
            )
        except ValueError:
            continue
        return subnet, int(option.scopelen)

    return None, 0


def set_ecs(msg: dns.message.Message, ip, scope: int) -> Subnet:
    """Add an ECS option for ``ip`` to ``msg`` and return the masked subnet."""
    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped

    prefix = _DEFAULT_ECS_V4 if addr.version == 4 else _DEFAULT_ECS_V6
    subnet = ipaddress.ip_network(f"{addr}/{prefix}", strict=False)
    option = dns.edns.ECSOption(str(subnet.network_address), prefix, scope)

    if msg.edns >= 0:
        # Servers may answer FORMERR to several OPT RRs, so extend the one
        # that's already there.
        msg.use_edns(
            msg.edns,
            msg.ednsflags,
            msg.payload,
            request_payload=msg.request_payload,
            options=[*msg.options, option],
        )
    else:
        msg.use_edns(0, 0, _ECS_PAYLOAD, options=[option])

    return subnet