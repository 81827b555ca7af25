import time
from datetime import datetime

import pytest

from dnsrelay.clock import Clock, RealClock


def test_real_clock_is_close_to_system_time():
    now = RealClock().now()
    assert abs(now.timestamp() - time.time()) < 5


def test_real_clock_uses_local_offset():
    now = RealClock().now()
    assert now.utcoffset() == datetime.now().astimezone().utcoffset()


def test_real_clock_is_monotonic_enough():
    clock = RealClock()
    first = clock.now()
    second = clock.now()
    assert second >= first


def test_clock_is_abstract():
    with pytest.raises(TypeError):
        Clock()