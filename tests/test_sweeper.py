"""Tests for the liveness sweeper."""

import time

import pytest

from beacon.errors import NotFound, StoreError
from beacon.registry.models import RegisterRequest
from beacon.sweeper import LivenessSweeper


def _register(registry, name):
    return registry.register(RegisterRequest.from_dict({
        "name": name,
        "url": f"http://{name.lower()}.internal",
        "capabilities": {"ping": True},
        "categories": ["test"],
    }))


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_prunes_only_stale_services(registry, clock):
    stale = _register(registry, "Stale")
    clock.advance(minutes=90)
    recent = _register(registry, "Recent")
    clock.advance(minutes=30)
    # stale: last seen 2h ago, recent: 30m ago

    sweeper = LivenessSweeper(registry, interval=3600, stale_after=3600)
    assert sweeper.sweep_once() == [stale.id]

    with pytest.raises(NotFound):
        registry.get(stale.id)
    assert registry.get(recent.id).id == recent.id


def test_stale_after_independent_of_interval(registry, clock):
    service = _register(registry, "Svc")
    clock.advance(minutes=20)

    sweeper = LivenessSweeper(registry, interval=3600, stale_after=600)
    assert sweeper.sweep_once() == [service.id]


def test_heartbeat_keeps_service_alive(registry, clock):
    service = _register(registry, "Alive")
    clock.advance(minutes=50)
    registry.heartbeat(service.id)
    clock.advance(minutes=50)

    sweeper = LivenessSweeper(registry, interval=3600, stale_after=3600)
    assert sweeper.sweep_once() == []
    assert registry.get(service.id).id == service.id


def test_heartbeat_between_selection_and_delete_wins(registry, clock, monkeypatch):
    service = _register(registry, "Racy")
    clock.advance(hours=2)

    original = registry.list_stale

    def list_then_heartbeat(cutoff):
        selected = original(cutoff)
        registry.heartbeat(service.id)
        return selected

    monkeypatch.setattr(registry, "list_stale", list_then_heartbeat)
    sweeper = LivenessSweeper(registry, interval=3600, stale_after=3600)

    assert sweeper.sweep_once() == []
    assert registry.get(service.id).last_seen == clock.current


def test_concurrently_unregistered_service_is_skipped(registry, clock, monkeypatch):
    gone = _register(registry, "Gone")
    stale = _register(registry, "Stale")
    clock.advance(hours=2)

    original = registry.list_stale

    def list_then_unregister(cutoff):
        selected = original(cutoff)
        registry.unregister(gone.id)
        return selected

    monkeypatch.setattr(registry, "list_stale", list_then_unregister)
    sweeper = LivenessSweeper(registry, interval=3600, stale_after=3600)
    assert sweeper.sweep_once() == [stale.id]


def test_store_error_on_one_service_does_not_abandon_cycle(registry, clock, monkeypatch):
    broken = _register(registry, "Broken")
    stale = _register(registry, "Stale")
    clock.advance(hours=2)

    original = registry.unregister

    def unregister(service_id, stale_before=None):
        if service_id == broken.id:
            raise StoreError("database is locked")
        return original(service_id, stale_before=stale_before)

    monkeypatch.setattr(registry, "unregister", unregister)
    sweeper = LivenessSweeper(registry, interval=3600, stale_after=3600)

    assert sweeper.sweep_once() == [stale.id]
    assert registry.get(broken.id).id == broken.id
    with pytest.raises(NotFound):
        registry.get(stale.id)


def test_background_loop_prunes_and_stops(registry, clock):
    service = _register(registry, "Background")
    clock.advance(hours=2)

    sweeper = LivenessSweeper(registry, interval=0.05, stale_after=3600)
    sweeper.start()
    try:
        assert _wait_for(lambda: registry.list_services() == [])
    finally:
        sweeper.stop(timeout=2)
    assert not sweeper.running

    with pytest.raises(NotFound):
        registry.get(service.id)


def test_failed_cycle_does_not_stop_loop(registry, clock, monkeypatch):
    _register(registry, "Eventually")
    clock.advance(hours=2)

    original = registry.list_stale
    calls = {"n": 0}

    def flaky(cutoff):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StoreError("connection lost")
        return original(cutoff)

    monkeypatch.setattr(registry, "list_stale", flaky)
    sweeper = LivenessSweeper(registry, interval=0.05, stale_after=3600)
    sweeper.start()
    try:
        assert _wait_for(lambda: registry.list_services() == [])
        assert sweeper.running
    finally:
        sweeper.stop(timeout=2)
    assert calls["n"] >= 2


def test_stop_is_prompt(registry):
    sweeper = LivenessSweeper(registry, interval=3600, stale_after=3600)
    sweeper.start()
    started = time.monotonic()
    sweeper.stop(timeout=5)
    assert time.monotonic() - started < 5
    assert not sweeper.running


@pytest.mark.parametrize("interval, stale_after", [(0, 60), (60, 0), (-1, 60)])
def test_rejects_non_positive_parameters(registry, interval, stale_after):
    with pytest.raises(ValueError):
        LivenessSweeper(registry, interval=interval, stale_after=stale_after)
