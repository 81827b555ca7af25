import dns.flags
import dns.message
import dns.rrset

from dnsrelay.dnscontext import (
    DEFAULT_UDP_BUF_SIZE,
    CustomUpstreamConfig,
    DNSContext,
    DoQVersion,
    Proto,
    dns_size,
)


def _big_response(req, count=100):
    res = dns.message.make_response(req)
    res.answer.append(
        dns.rrset.from_text_list(
            "example.com.",
            300,
            "IN",
            "A",
            [f"10.0.{i // 256}.{i % 256}" for i in range(count)],
        )
    )
    return res


def test_dns_size_tcp():
    req = dns.message.make_query("example.com.", "A")
    assert dns_size(False, req) == 65535


def test_dns_size_udp_without_edns():
    req = dns.message.make_query("example.com.", "A")
    assert dns_size(True, req) == 512


def test_dns_size_udp_with_edns():
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
    assert dns_size(True, req) == 4096


def test_dns_size_udp_small_payload_is_raised():
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=100)
    assert dns_size(True, req) == dns_size(True, dns.message.make_query("a.", "A"))


def test_calc_flags_without_edns():
    req = dns.message.make_query("example.com.", "A")
    req.flags |= dns.flags.AD
    dctx = DNSContext(req=req)
    dctx.calc_flags_and_size()

    assert dctx.udp_size == DEFAULT_UDP_BUF_SIZE
    assert dctx.ad_bit is True
    assert dctx.has_edns0 is False
    assert dctx.do_bit is False


def test_calc_flags_with_edns():
    req = dns.message.make_query(
        "example.com.", "A", use_edns=0, payload=4096, want_dnssec=True
    )
    dctx = DNSContext(req=req)
    dctx.calc_flags_and_size()

    assert dctx.udp_size == 4096
    assert dctx.has_edns0 is True
    assert dctx.do_bit is True
    assert dctx.ad_bit is False


def test_scrub_adds_edns_when_requested():
    req = dns.message.make_query(
        "example.com.", "A", use_edns=0, payload=4096, want_dnssec=True
    )
    res = dns.message.make_response(req)
    res.use_edns(False)
    dctx = DNSContext(proto=Proto.TCP, req=req, res=res)
    dctx.scrub()

    assert res.edns == 0
    assert res.payload == 4096
    assert res.ednsflags & dns.flags.DO


def test_scrub_does_not_add_edns_when_absent():
    req = dns.message.make_query("example.com.", "A")
    res = dns.message.make_response(req)
    dctx = DNSContext(proto=Proto.UDP, req=req, res=res)
    dctx.scrub()
    assert res.edns == -1


def test_scrub_truncates_udp():
    req = dns.message.make_query("example.com.", "A")
    res = _big_response(req)
    dctx = DNSContext(proto=Proto.UDP, req=req, res=res)
    dctx.scrub()

    assert len(res.to_wire()) <= 512
    assert res.flags & dns.flags.TC
    kept = sum(len(rrset) for rrset in res.answer)
    assert 0 < kept < 100


def test_scrub_keeps_everything_over_tcp():
    req = dns.message.make_query("example.com.", "A")
    res = _big_response(req)
    dctx = DNSContext(proto=Proto.TCP, req=req, res=res)
    dctx.scrub()

    assert sum(len(rrset) for rrset in res.answer) == 100
    assert not res.flags & dns.flags.TC


def test_scrub_without_response_leaves_flags():
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
    dctx = DNSContext(req=req)
    dctx.scrub()
    assert dctx.res is None
    assert dctx.udp_size == 0


def test_doq_versions():
    assert DoQVersion(0) is DoQVersion.V1_DRAFT
    assert DoQVersion(1) is DoQVersion.V1


class _FakeUpstreamConfig:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


def test_custom_upstream_config_close():
    ups = _FakeUpstreamConfig()
    cfg = CustomUpstreamConfig(ups, False, 0, False)
    cfg.close()
    assert ups.closed == 1
    assert cfg.cache is None


def test_custom_upstream_config_clear_cache():
    cfg = CustomUpstreamConfig(_FakeUpstreamConfig(), True, 4096, True)
    req = dns.message.make_query("example.com.", "A")
    res = dns.message.make_response(req)
    res.answer.append(
        dns.rrset.from_text("example.com.", 3600, "IN", "A", "8.8.8.8")
    )
    cfg.cache.set(res, "upstream")

    item, _, _ = cfg.cache.get(req)
    assert item is not None
    assert item.upstream == "upstream"

    cfg.clear_cache()
    item, expired, _ = cfg.cache.get(req)
    assert item is None
    assert expired is False