import pytest

from dnsrelay.config import Config, ConfigError, UpstreamMode, check_inclusion

LOCAL = [("127.0.0.1", 0)]


def test_check_inclusion_bounds():
    check_inclusion(0, 0, 32)
    check_inclusion(32, 0, 32)
    with pytest.raises(ConfigError, match="less than min 0"):
        check_inclusion(-1, 0, 32)
    with pytest.raises(ConfigError, match="greater than max 32"):
        check_inclusion(33, 0, 32)


def test_upstream_mode_unset():
    assert Config().validate_upstream_mode() is None
    assert Config(upstream_mode="").validate_upstream_mode() is None


@pytest.mark.parametrize("mode", list(UpstreamMode))
def test_upstream_mode_known(mode):
    assert Config(upstream_mode=mode.value).validate_upstream_mode() is mode


def test_upstream_mode_bad():
    with pytest.raises(ConfigError, match='bad upstream mode: "bogus"'):
        Config(upstream_mode="bogus").validate_upstream_mode()


def test_ratelimit_disabled_skips_checks():
    cfg = Config(ratelimit=0, ratelimit_subnet_len_ipv4=-5)
    cfg.validate_ratelimit()
    assert cfg.ratelimit == 0


def test_ratelimit_valid():
    cfg = Config(ratelimit=10, ratelimit_subnet_len_ipv4=24, ratelimit_subnet_len_ipv6=64)
    cfg.validate_ratelimit()
    assert cfg.ratelimit_subnet_len_ipv6 == 64


def test_ratelimit_bad_ipv4():
    cfg = Config(ratelimit=10, ratelimit_subnet_len_ipv4=33, ratelimit_subnet_len_ipv6=64)
    with pytest.raises(ConfigError, match="ratelimit subnet len ipv4 is invalid"):
        cfg.validate_ratelimit()


def test_ratelimit_bad_ipv6():
    cfg = Config(ratelimit=10, ratelimit_subnet_len_ipv4=24, ratelimit_subnet_len_ipv6=129)
    with pytest.raises(ConfigError, match="ratelimit subnet len ipv6 is invalid"):
        cfg.validate_ratelimit()


def test_has_listen_addrs():
    assert Config().has_listen_addrs() is False
    assert Config(udp_listen_addr=LOCAL).has_listen_addrs() is True
    assert Config(dnscrypt_tcp_listen_addr=[]).has_listen_addrs() is True


def test_no_listen_addrs():
    with pytest.raises(ConfigError, match="no listen address specified"):
        Config().validate_listen_addrs()


@pytest.mark.parametrize(
    ("field", "message"),
    [
        ("tls_listen_addr", "tls listener configuration not found"),
        ("https_listen_addr", "https listener configuration not found"),
        ("quic_listen_addr", "quic listener configuration not found"),
    ],
)
def test_tls_listeners_need_tls_config(field, message):
    cfg = Config(**{field: LOCAL})
    with pytest.raises(ConfigError, match=message):
        cfg.validate_tls_config()
    with pytest.raises(ConfigError, match="invalid tls configuration: " + message):
        cfg.validate_listen_addrs()


def test_tls_config_present():
    cfg = Config(tls_listen_addr=LOCAL, https_listen_addr=LOCAL, tls_config=object())
    cfg.validate_listen_addrs()
    assert cfg.has_listen_addrs() is True


def test_dnscrypt_tcp_without_config():
    cfg = Config(dnscrypt_tcp_listen_addr=LOCAL)
    with pytest.raises(ConfigError, match="dnscrypt tcp listener"):
        cfg.validate_listen_addrs()


def test_dnscrypt_udp_without_provider_name():
    cfg = Config(dnscrypt_udp_listen_addr=LOCAL, dnscrypt_resolver_cert=object())
    with pytest.raises(ConfigError, match="dnscrypt udp listener"):
        cfg.validate_listen_addrs()


def test_dnscrypt_with_config():
    cfg = Config(
        dnscrypt_udp_listen_addr=LOCAL,
        dnscrypt_tcp_listen_addr=LOCAL,
        dnscrypt_resolver_cert=object(),
        dnscrypt_provider_name="2.dnscrypt-cert.example.org",
    )
    cfg.validate_listen_addrs()
    assert cfg.dnscrypt_provider_name.endswith("example.org")