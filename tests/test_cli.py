"""Tests for the beacon command line."""

import json
from datetime import datetime, timedelta, timezone

import pytest
import yaml

from beacon.cli import main
from beacon.registry import Registry, open_store
from beacon.registry.models import RegisterRequest


def _registry_args(server) -> list[str]:
    return ["--registry-host", "127.0.0.1", "--registry-port", str(server.server_address[1])]


def test_no_command_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 1


def test_services_without_subcommand_exits():
    with pytest.raises(SystemExit) as exc:
        main(["services"])
    assert exc.value.code == 1


def test_config_prints_effective_values(capsys, monkeypatch):
    monkeypatch.setenv("BEACON_PORT", "9300")
    main(["config", "--stale-after", "2h"])
    out = yaml.safe_load(capsys.readouterr().out)
    assert out["port"] == 9300
    assert out["stale_after"] == 7200.0
    assert out["sweep_interval"] == 3600


def test_config_rejects_bad_duration(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["config", "--sweep-interval", "often"])
    assert exc.value.code == 1
    assert "invalid configuration" in capsys.readouterr().err


def test_sweep_prunes_stale_rows(database_url, capsys):
    store = open_store(database_url)
    long_ago = datetime.now(timezone.utc) - timedelta(hours=3)
    old = Registry(store, clock=lambda: long_ago).register(RegisterRequest.from_dict({
        "name": "Old", "url": "http://old", "capabilities": {}, "categories": [],
    }))
    fresh = Registry(store).register(RegisterRequest.from_dict({
        "name": "Fresh", "url": "http://fresh", "capabilities": {}, "categories": [],
    }))
    store.dispose()

    main(["sweep", "--database-url", database_url, "--stale-after", "1h"])
    assert "Pruned 1 service(s)" in capsys.readouterr().out

    store = open_store(database_url)
    remaining = {s.id for s in Registry(store).list_services()}
    store.dispose()
    assert remaining == {fresh.id}
    assert old.id not in remaining


def test_services_register_list_get(server, capsys):
    main([
        "services", "register", *_registry_args(server), "--format", "json",
        "--name", "Mapping Service", "--url", "http://maps",
        "--capability", "tiles", "--capability", "routing=false",
        "--category", "search", "--metadata", "owner=geo",
    ])
    created = json.loads(capsys.readouterr().out)
    assert created["capabilities"] == {"tiles": True, "routing": False}
    assert created["categories"] == ["search"]
    assert created["metadata"] == {"owner": "geo"}

    main(["services", "list", *_registry_args(server), "--category", "search"])
    out = capsys.readouterr().out
    assert created["id"] in out
    assert "Mapping Service" in out

    main(["services", "search", *_registry_args(server), "map", "--format", "json"])
    assert [s["id"] for s in json.loads(capsys.readouterr().out)] == [created["id"]]

    main(["services", "get", *_registry_args(server), created["id"], "--format", "json"])
    assert json.loads(capsys.readouterr().out)["id"] == created["id"]


def test_services_register_from_file(server, tmp_path, capsys):
    payload = tmp_path / "svc.yaml"
    payload.write_text(yaml.dump({
        "name": "From File", "url": "http://file", "capabilities": {"a": True},
        "categories": ["x"],
    }))
    main(["services", "register", *_registry_args(server), "--file", str(payload),
          "--format", "json"])
    created = json.loads(capsys.readouterr().out)
    assert created["name"] == "From File"

    main(["services", "update", *_registry_args(server), created["id"],
          "--name", "Renamed", "--url", "http://file", "--category", "y", "--format", "json"])
    updated = json.loads(capsys.readouterr().out)
    assert updated["categories"] == ["y"]
    assert updated["capabilities"] == {}


def test_services_heartbeat_and_unregister(server, client, capsys):
    service = client.register({
        "name": "svc", "url": "http://svc", "capabilities": {}, "categories": [],
    })
    main(["services", "heartbeat", *_registry_args(server), service.id])
    assert "Heartbeat received" in capsys.readouterr().out

    main(["services", "unregister", *_registry_args(server), service.id])
    assert "Service unregistered" in capsys.readouterr().out

    with pytest.raises(SystemExit) as exc:
        main(["services", "get", *_registry_args(server), service.id])
    assert exc.value.code == 1
    assert "not found" in capsys.readouterr().err


def test_services_register_validation_error(server, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["services", "register", *_registry_args(server), "--name", "no-url"])
    assert exc.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_services_list_unreachable_registry(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["services", "list", "--registry-host", "127.0.0.1", "--registry-port", "1"])
    assert exc.value.code == 1
    assert "Cannot reach registry" in capsys.readouterr().err


def test_config_rejects_non_mapping_file(tmp_path, capsys):
    path = tmp_path / "list.yaml"
    path.write_text("- port: 9000\n")
    with pytest.raises(SystemExit) as exc:
        main(["config", "--config", str(path)])
    assert exc.value.code == 1
    assert "invalid configuration" in capsys.readouterr().err
