"""Exchanging requests with a set of upstreams using weighted load balancing."""

from __future__ import annotations

import abc
import logging
import random
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, Optional, Sequence

import dns.message

from dnsrelay.cache import _upstream_address
from dnsrelay.clock import Clock, RealClock

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = timedelta(seconds=10)
"""Round-trip time charged to an upstream that failed to respond."""

_MICROSECOND = timedelta(microseconds=1)


class Upstream(abc.ABC):
    """A DNS server requests can be forwarded to."""

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """Address of the upstream."""

    @abc.abstractmethod
    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        """Send ``req`` and return the response, raising on failure."""


class AllUpstreamsFailedError(Exception):
    """Raised when none of the upstreams managed to answer a request."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        joined = "; ".join(str(err) for err in self.errors)
        super().__init__(f"all upstreams failed to exchange request: {joined}")


@dataclass(frozen=True)
class UpstreamRTTStats:
    """Round-trip time statistics of a single upstream."""

    rtt_sum: float = 0.0
    """Sum of all the round-trip times in microseconds."""

    req_num: float = 0.0
    """Number of requests sent to the upstream."""

    def update(self, rtt: timedelta) -> "UpstreamRTTStats":
        """Return the statistics with ``rtt`` added."""
        return UpstreamRTTStats(
            rtt_sum=self.rtt_sum + float(rtt // _MICROSECOND),
            req_num=self.req_num + 1,
        )


def _weighted_order(weights: Sequence[float], rng: random.Random) -> Iterator[int]:
    """Yield indices sampled without replacement, proportionally to weights."""
    remaining = list(weights)
    while True:
        total = sum(w for w in remaining if w > 0)
        if total <= 0:
            return
        r = rng.random() * total
        chosen = -1
        for idx, weight in enumerate(remaining):
            if weight <= 0:
                continue
            chosen = idx
            r -= weight
            if r < 0:
                break
        remaining[chosen] = 0
        yield chosen


class UpstreamExchanger:
    """Picks upstreams by their measured speed and exchanges requests with them."""

    def __init__(
        self, clock: Optional[Clock] = None, rng: Optional[random.Random] = None
    ) -> None:
        self.clock = clock if clock is not None else RealClock()
        self.rng = rng if rng is not None else random.Random()
        self._rtt_stats: dict[str, UpstreamRTTStats] = {}
        self._lock = threading.Lock()

    def exchange_upstreams(
        self, req: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> tuple[dns.message.Message, Upstream]:
        """Resolve ``req``; return the response and the upstream that gave it."""
        if len(upstreams) == 1:
            upstream = upstreams[0]
            resp, _ = self.exchange(upstream, req)
            return resp, upstream

        errors: list[BaseException] = []
        for idx in _weighted_order(self.calc_weights(upstreams), self.rng):
            upstream = upstreams[idx]
            address = _upstream_address(upstream)
            try:
                resp, elapsed = self.exchange(upstream, req)
            except Exception as err:  # noqa: BLE001 - any upstream failure counts
                errors.append(err)
                self.update_rtt(address, DEFAULT_TIMEOUT)
                continue
            self.update_rtt(address, elapsed)
            return resp, upstream

        raise AllUpstreamsFailedError(errors)

    def exchange(
        self, upstream: Upstream, req: dns.message.Message
    ) -> tuple[dns.message.Message, timedelta]:
        """Exchange ``req`` with ``upstream``; return the response and the time taken."""
        start = self.clock.now()
        address = _upstream_address(upstream)
        question = req.question[0] if req.question else None
        try:
            resp = upstream.exchange(req)
        except Exception as err:
            duration = self.clock.now() - start
            logger.error(
                "exchange failed: upstream=%s question=%s duration=%s error=%s",
                address,
                question,
                duration,
                err,
            )
            raise
        duration = self.clock.now() - start
        logger.debug(
            "exchange successfully finished: upstream=%s question=%s duration=%s",
            address,
            question,
            duration,
        )
        return resp, duration

    def calc_weights(self, upstreams: Sequence[Upstream]) -> list[float]:
        """Return the weight of each upstream, inverse to its mean RTT."""
        weights = []
        with self._lock:
            for upstream in upstreams:
                stats = self._rtt_stats.get(
                    _upstream_address(upstream), UpstreamRTTStats()
                )
                if stats.rtt_sum == 0 or stats.req_num == 0:
                    weights.append(1.0)
                else:
                    weights.append(1 / (stats.rtt_sum / stats.req_num))
        return weights

    def update_rtt(self, address: str, rtt: timedelta) -> None:
        """Record a round-trip time for the upstream at ``address``."""
        with self._lock:
            current = self._rtt_stats.get(address, UpstreamRTTStats())
            self._rtt_stats[address] = current.update(rtt)