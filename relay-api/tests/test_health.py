import asyncio
import threading
import time

import pytest

from fake_platform import FakePlatform, permanent, transient
from health import HealthValidator
from models import HealthVerdict
from platform_adapter.adapter import HEALTHY, PROGRESSING, UNHEALTHY
from test_helpers import make_settings

pytestmark = pytest.mark.anyio


class ScriptedPlatform:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.queries = 0

    def query_health(self, handle):
        self.queries += 1
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return {"status": answer, "detail": None}


def _validator(monkeypatch, tmp_path, platform, **overrides):
    return HealthValidator(platform, make_settings(monkeypatch, tmp_path, **overrides))


async def test_healthy_after_dwell(monkeypatch, tmp_path):
    platform = ScriptedPlatform(PROGRESSING, HEALTHY)
    validator = _validator(monkeypatch, tmp_path, platform, RELAY_HEALTH_DWELL_SECONDS="0.03")
    verdict = await validator.validate("rollout-1", 2, asyncio.Event())
    assert verdict == HealthVerdict.HEALTHY
    assert platform.queries >= 3


async def test_transient_error_resets_dwell(monkeypatch, tmp_path):
    platform = ScriptedPlatform(HEALTHY, transient(), HEALTHY)
    validator = _validator(monkeypatch, tmp_path, platform, RELAY_HEALTH_DWELL_SECONDS="0.02")
    verdict = await validator.validate("rollout-1", 2, asyncio.Event())
    assert verdict == HealthVerdict.HEALTHY
    assert platform.queries >= 4


async def test_unhealthy_is_immediate(monkeypatch, tmp_path):
    platform = ScriptedPlatform(PROGRESSING, UNHEALTHY)
    verdict = await _validator(monkeypatch, tmp_path, platform).validate("rollout-1", 2, asyncio.Event())
    assert verdict == HealthVerdict.UNHEALTHY
    assert platform.queries == 2


async def test_permanent_query_error_is_unhealthy(monkeypatch, tmp_path):
    platform = ScriptedPlatform(permanent())
    verdict = await _validator(monkeypatch, tmp_path, platform).validate("rollout-1", 2, asyncio.Event())
    assert verdict == HealthVerdict.UNHEALTHY


async def test_never_healthy_times_out(monkeypatch, tmp_path):
    platform = ScriptedPlatform(PROGRESSING)
    verdict = await _validator(monkeypatch, tmp_path, platform).validate("rollout-1", 0.05, asyncio.Event())
    assert verdict == HealthVerdict.TIMED_OUT


async def test_cancel_event_interrupts_polling(monkeypatch, tmp_path):
    platform = ScriptedPlatform(PROGRESSING)
    validator = _validator(monkeypatch, tmp_path, platform, RELAY_HEALTH_POLL_INTERVAL_SECONDS="5")
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    verdict = await validator.validate("rollout-1", 30, cancel)
    assert verdict == HealthVerdict.CANCELED
    assert platform.queries == 1


async def test_fake_platform_defaults_to_healthy(monkeypatch, tmp_path):
    platform = FakePlatform()
    handle = platform.apply_spec({"service": "payments", "environment": "dev", "version": "1.0.0", "image": "img"})
    verdict = await _validator(monkeypatch, tmp_path, platform).validate(handle, 1, asyncio.Event())
    assert verdict == HealthVerdict.HEALTHY


class HangingPlatform:
    """Health queries block until released, like a platform that stopped answering."""

    def __init__(self):
        self.release = threading.Event()
        self.queries = 0

    def query_health(self, handle):
        self.queries += 1
        self.release.wait(5)
        return {"status": HEALTHY, "detail": None}


async def test_hanging_query_is_bounded_by_the_deadline(monkeypatch, tmp_path):
    platform = HangingPlatform()
    validator = _validator(monkeypatch, tmp_path, platform)
    started = time.monotonic()
    try:
        verdict = await validator.validate("rollout-1", 0.2, asyncio.Event())
    finally:
        platform.release.set()
    assert verdict == HealthVerdict.TIMED_OUT
    assert time.monotonic() - started < 1.0
    assert platform.queries == 1


async def test_cancel_abandons_an_in_flight_query(monkeypatch, tmp_path):
    platform = HangingPlatform()
    validator = _validator(monkeypatch, tmp_path, platform)
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.1, cancel.set)
    started = time.monotonic()
    try:
        verdict = await validator.validate("rollout-1", 30, cancel)
    finally:
        platform.release.set()
    assert verdict == HealthVerdict.CANCELED
    assert time.monotonic() - started < 1.0
