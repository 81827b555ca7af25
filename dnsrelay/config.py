"""Proxy configuration and its validation."""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

LOG_PREFIX = "dnsproxy"
"""Prefix used for the proxy's log records."""

IPV4_BIT_LEN = 32
IPV6_BIT_LEN = 128

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
ListenAddr = tuple[str, int]


class ConfigError(ValueError):
    """Raised when the proxy configuration is invalid."""


class UpstreamMode(str, enum.Enum):
    """Logic by which upstreams are used."""

    LOAD_BALANCE = "load_balance"
    PARALLEL = "parallel"
    FASTEST_ADDR = "fastest_addr"


def check_inclusion(n: int, min_n: int, max_n: int) -> None:
    """Raise ConfigError unless ``min_n <= n <= max_n``."""
    if n < min_n:
        raise ConfigError(f"value {n} less than min {min_n}")
    if n > max_n:
        raise ConfigError(f"value {n} greater than max {max_n}")


@dataclass
class Config:
    """All the settings of a proxy.

    Listen address lists distinguish ``None`` (not configured) from an empty
    list (configured, but empty).
    """

    logger: Optional[logging.Logger] = None
    trusted_proxies: Optional[list[Network]] = None
    private_subnets: Optional[list[Network]] = None
    message_constructor: Any = None
    before_request_handler: Any = None
    request_handler: Optional[Callable[..., Any]] = None
    response_handler: Optional[Callable[..., Any]] = None
    upstream_config: Any = None
    private_rdns_upstream_config: Any = None
    fallbacks: Any = None
    userinfo: Optional[tuple[str, str]] = None
    tls_config: Any = None
    dnscrypt_resolver_cert: Any = None
    dnscrypt_provider_name: str = ""
    https_server_name: str = ""
    upstream_mode: Union[UpstreamMode, str, None] = None
    udp_listen_addr: Optional[list[ListenAddr]] = None
    tcp_listen_addr: Optional[list[ListenAddr]] = None
    https_listen_addr: Optional[list[ListenAddr]] = None
    tls_listen_addr: Optional[list[ListenAddr]] = None
    quic_listen_addr: Optional[list[ListenAddr]] = None
    dnscrypt_udp_listen_addr: Optional[list[ListenAddr]] = None
    dnscrypt_tcp_listen_addr: Optional[list[ListenAddr]] = None
    bogus_nxdomain: list[Network] = field(default_factory=list)
    dns64_prefs: Optional[list[Network]] = None
    ratelimit_whitelist: list[Address] = field(default_factory=list)
    edns_addr: Optional[Address] = None
    ratelimit_subnet_len_ipv4: int = 0
    ratelimit_subnet_len_ipv6: int = 0
    ratelimit: int = 0
    cache_size_bytes: int = 0
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0
    max_goroutines: int = 0
    udp_buffer_size: int = 0
    fastest_ping_timeout: timedelta = timedelta(0)
    refuse_any: bool = False
    http3: bool = False
    enable_edns_client_subnet: bool = False
    cache_enabled: bool = False
    cache_optimistic: bool = False
    use_dns64: bool = False
    use_private_rdns: bool = False
    prefer_ipv6: bool = False

    def validate_upstream_mode(self) -> Optional[UpstreamMode]:
        """Return the configured mode, None if unset; raise if it's unknown."""
        mode = self.upstream_mode
        if mode is None or mode == "":
            return None
        try:
            return UpstreamMode(mode)
        except ValueError:
            raise ConfigError(f'bad upstream mode: "{mode}"') from None

    def validate_ratelimit(self) -> None:
        """Check the rate limiting subnet lengths if rate limiting is on."""
        if self.ratelimit == 0:
            return
        try:
            check_inclusion(self.ratelimit_subnet_len_ipv4, 0, IPV4_BIT_LEN)
        except ConfigError as err:
            raise ConfigError(f"ratelimit subnet len ipv4 is invalid: {err}") from err
        try:
            check_inclusion(self.ratelimit_subnet_len_ipv6, 0, IPV6_BIT_LEN)
        except ConfigError as err:
            raise ConfigError(f"ratelimit subnet len ipv6 is invalid: {err}") from err

    def validate_listen_addrs(self) -> None:
        """Check that listeners are configured together with what they need."""
        if not self.has_listen_addrs():
            raise ConfigError("no listen address specified")

        try:
            self.validate_tls_config()
        except ConfigError as err:
            raise ConfigError(f"invalid tls configuration: {err}") from err

        if self.dnscrypt_resolver_cert is None or self.dnscrypt_provider_name == "":
            if self.dnscrypt_tcp_listen_addr is not None:
                raise ConfigError(
                    "cannot create dnscrypt tcp listener without dnscrypt config"
                )
            if self.dnscrypt_udp_listen_addr is not None:
                raise ConfigError(
                    "cannot create dnscrypt udp listener without dnscrypt config"
                )

    def validate_tls_config(self) -> None:
        """Raise if an encrypted listener is configured without TLS settings."""
        if self.tls_config is not None:
            return
        if self.tls_listen_addr is not None:
            raise ConfigError("tls listener configuration not found")
        if self.https_listen_addr is not None:
            raise ConfigError("https listener configuration not found")
        if self.quic_listen_addr is not None:
            raise ConfigError("quic listener configuration not found")

    def has_listen_addrs(self) -> bool:
        """Tell whether any listen address is configured."""
        return any(
            addrs is not None
            for addrs in (
                self.udp_listen_addr,
                self.tcp_listen_addr,
                self.tls_listen_addr,
                self.https_listen_addr,
                self.quic_listen_addr,
                self.dnscrypt_udp_listen_addr,
                self.dnscrypt_tcp_listen_addr,
            )
        )

    def _log_config_info(self) -> None:
        log = self.logger if self.logger is not None else logger
        if self.cache_min_ttl > 0 or self.cache_max_ttl > 0:
            log.info(
                "cache ttl override is enabled: min=%d max=%d",
                self.cache_min_ttl,
                self.cache_max_ttl,
            )
        if self.ratelimit > 0:
            log.info(
                "ratelimit is enabled: rps=%d ipv4_subnet_mask_len=%d "
                "ipv6_subnet_mask_len=%d",
                self.ratelimit,
                self.ratelimit_subnet_len_ipv4,
                self.ratelimit_subnet_len_ipv6,
            )
        if self.refuse_any:
            log.info("server will refuse requests of type any")
        if self.bogus_nxdomain:
            log.info(
                "bogus-nxdomain ip specified: prefix_len=%d", len(self.bogus_nxdomain)
            )
        if self.upstream_mode:
            log.info("upstream mode is set: mode=%s", self.upstream_mode)