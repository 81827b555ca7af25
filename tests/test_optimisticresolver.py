import logging
import threading

from dnsrelay.optimisticresolver import CachingResolver, OptimisticResolver


class _Resolver(CachingResolver):
    def __init__(self, on_reply, on_cache):
        self._on_reply = on_reply
        self._on_cache = on_cache

    def reply_from_upstream(self, dctx):
        return self._on_reply(dctx)

    def cache_resp(self, dctx):
        self._on_cache(dctx)


class _BlockingResolver(CachingResolver):
    """Records every call and blocks inside cache_resp until released."""

    def __init__(self):
        self.resolved = []
        self.cached = []
        self.started = threading.Event()
        self.release = threading.Event()

    def reply_from_upstream(self, dctx):
        self.resolved.append(dctx)
        return True, None

    def cache_resp(self, dctx):
        self.cached.append(dctx)
        self.started.set()
        self.release.wait(5)


KEY = bytes([1, 2, 3])


def test_resolve_once_single_flight():
    recorder = _BlockingResolver()
    s = OptimisticResolver(recorder)

    primary = threading.Thread(target=s.resolve_once, args=("primary", KEY))
    primary.start()
    assert recorder.started.wait(5)

    secondary = [
        threading.Thread(target=s.resolve_once, args=("secondary", KEY))
        for _ in range(10)
    ]
    for t in secondary:
        t.start()
    for t in secondary:
        t.join(5)

    s.resolve_once("direct", KEY)
    assert recorder.resolved == ["primary"]
    assert recorder.cached == ["primary"]

    recorder.release.set()
    primary.join(5)

    assert recorder.resolved == ["primary"]
    assert recorder.cached == ["primary"]

    s.resolve_once("after", KEY)
    assert recorder.resolved == ["primary", "after"]
    assert recorder.cached == ["primary", "after"]


def test_resolve_once_error_still_caches(caplog):
    log = logging.getLogger("tests.optimistic")
    caplog.set_level(logging.DEBUG, logger="tests.optimistic")
    cached = []

    s = OptimisticResolver(
        _Resolver(
            lambda _: (True, RuntimeError("sample resolving error")),
            lambda _: cached.append(True),
        )
    )
    s.resolve_once(None, KEY, log)

    assert cached == [True]
    assert "sample resolving error" in caplog.text


def test_resolve_once_not_ok():
    cached = []
    s = OptimisticResolver(
        _Resolver(lambda _: (False, None), lambda _: cached.append(True))
    )
    s.resolve_once(None, KEY)
    assert cached == []


def test_resolve_once_releases_key():
    calls = []
    s = OptimisticResolver(
        _Resolver(lambda _: (True, None), lambda dctx: calls.append(dctx))
    )
    s.resolve_once("first", KEY)
    s.resolve_once("second", KEY)
    assert calls == ["first", "second"]


def test_resolve_once_recovers_from_exception(caplog):
    log = logging.getLogger("tests.optimistic.recover")
    caplog.set_level(logging.DEBUG, logger="tests.optimistic.recover")

    def boom(_):
        raise ValueError("boom")

    calls = []
    s = OptimisticResolver(_Resolver(boom, lambda _: calls.append(1)))
    s.resolve_once(None, KEY, log)
    assert "boom" in caplog.text
    assert calls == []

    ok = OptimisticResolver(_Resolver(lambda _: (True, None), lambda _: calls.append(2)))
    ok.resolve_once(None, KEY, log)
    s._resolver = ok._resolver
    s.resolve_once(None, KEY, log)
    assert calls == [2, 2]