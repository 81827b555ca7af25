# dnsrelay

Building blocks for a caching, forwarding DNS proxy, built on `dnspython`.
Messages and records are `dns.message.Message` and `dns.rrset.RRset`
objects throughout.

## Modules

### `dnsrelay.cache`

- `ResponseCache(size, with_ecs, optimistic, clock)` — an LRU cache of
  packed responses, bounded by size in bytes (64 KiB when `size` is not
  positive).
  - `set(msg, upstream)` / `get(req)` store and look up by question type,
    class and lower-cased name. `get` returns `(item, expired, key)`.
  - With `with_ecs=True`, `set_with_subnet(msg, upstream, subnet)` and
    `get_with_subnet(req, subnet)` use a second store keyed also by the
    client subnet; lookup tries the subnet's prefix, then every shorter
    prefix down to `/0`.
  - With `optimistic=True`, expired items are still returned, with a TTL
    of `OPTIMISTIC_TTL` (10 s) and `expired` set to `True`.
  - Returned messages answer the request's ID and question, drop OPT
    records, drop DNSSEC records unless the request has the DO bit (records
    of the queried type are kept), and clear AD unless the request set AD
    or DO.
  - `clear_items()` and `clear_items_with_subnet()` empty the stores.
- `CacheItem(msg, upstream, ttl)` with `pack(now)`.
- `cache_ttl(msg)` decides cacheability following RFC 2308: NOERROR
  answers to A/AAAA need an address record or an SOA without NS in the
  authority section, NXDOMAIN needs such an SOA, SERVFAIL is capped at
  `SERVFAIL_MAX_CACHE_TTL` (30 s), other codes and truncated messages are
  not cached.
- `calculate_ttl`, `respect_ttl_overrides`, `msg_to_key`,
  `msg_to_key_with_subnet`, `is_dnssec`, `filter_msg`.

### `dnsrelay.dns64`

- `setup_dns64_prefixes(use_dns64, prefixes)` validates NAT64 prefixes
  (IPv6, at most /96) and falls back to the Well-Known Prefix
  `64:ff9b::/96`; it raises `ValueError` on bad prefixes.
- `DNS64(prefixes)` with `check`, `filter_nat64_answers`, `synth`,
  `synth_rrset`, `map_address`, `should_strip` and
  `perform(orig_req, orig_resp, exchange)`, where `exchange` is a callable
  taking a request and returning `(response, upstream)`. Synthesized
  records get the lower of the A record's TTL and the SOA TTL, or 600 s
  without an SOA.

### `dnsrelay.helpers`

- `ecs_from_msg(msg)` returns `(subnet, scope)` from the first EDNS Client
  Subnet option, or `(None, 0)`.
- `set_ecs(msg, ip, scope)` adds an ECS option with a /24 (IPv4) or /56
  (IPv6) mask, extending an existing OPT record if there is one, and
  returns the masked subnet.

### `dnsrelay.exchange`

- `Upstream` — abstract base with an `address` property and
  `exchange(req)`.
- `UpstreamExchanger(clock, rng)` — `exchange_upstreams(req, upstreams)`
  uses the only upstream directly, or tries upstreams in weighted random
  order, each weighted by the inverse of its mean round-trip time. Failures
  are charged `DEFAULT_TIMEOUT` (10 s). If all fail it raises
  `AllUpstreamsFailedError`, which holds the collected `errors`.
- `calc_weights`, `update_rtt` and `UpstreamRTTStats`.

### `dnsrelay.dnscontext`

- `DNSContext` — state of one request: `calc_flags_and_size()` reads
  AD, DO and the advertised UDP size; `scrub()` adds EDNS0 to the response
  when the request had it and truncates the response to the allowed size,
  setting TC when records are dropped.
- `dns_size(is_udp, req)`, `Proto`, `DoQVersion`.
- `CustomUpstreamConfig(upstream_config, cache_enabled, cache_size,
  enable_ecs)` with `close()` and `clear_cache()`.

### `dnsrelay.optimisticresolver`

- `CachingResolver` — abstract `reply_from_upstream(dctx)` returning
  `(ok, error)` and `cache_resp(dctx)`.
- `OptimisticResolver(resolver).resolve_once(dctx, key, logger)` resolves
  and caches, skipping the call while another one with the same key is in
  progress. Errors are logged, not raised.

### `dnsrelay.config`

- `Config` — a dataclass of proxy settings with the checks
  `validate_upstream_mode`, `validate_ratelimit`, `validate_listen_addrs`,
  `validate_tls_config` and `has_listen_addrs`; they raise `ConfigError`.
- `UpstreamMode` (`load_balance`, `parallel`, `fastest_addr`) and
  `check_inclusion(n, min_n, max_n)`.

### `dnsrelay.lookup`

- `lookup_net_ip(resolve, host, prefer_ipv6)` queries A and AAAA in
  parallel through `resolve(fqdn, qtype)` and returns the addresses with
  the preferred family first. It raises `EmptyHostError` for an empty host,
  and the resolver's error only when no address was found.
- `append_answer_addrs(addrs, answer)`.

## What it does not do

This is a library of parts. It has no command-line program and no server:
nothing listens on the addresses held in `Config`, and it contains no
DNS-over-UDP/TCP/TLS/HTTPS/QUIC or DNSCrypt client. Upstreams are whatever
you supply as `Upstream` subclasses. `UpstreamExchanger` implements the
weighted load-balancing mode only; the `parallel` and `fastest_addr` values
of `UpstreamMode` are accepted by `Config` but not acted upon.

## Installation

```
pip install .
```

## Example

```python
import dns.message
import dns.rrset

from dnsrelay.cache import ResponseCache

cache = ResponseCache(size=4096, with_ecs=False, optimistic=False)

req = dns.message.make_query("example.org.", "A")
resp = dns.message.make_response(req)
resp.answer.append(dns.rrset.from_text("example.org.", 300, "IN", "A", "192.0.2.1"))

cache.set(resp, None)
item, expired, key = cache.get(req)
print(item.msg.answer, expired)
```

## Running the tests

```
pip install .[test]
pytest
```