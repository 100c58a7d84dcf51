import asyncio

import pytest

from serverpanel.services import panel_db


def _init(monkeypatch, tmp_path):
    monkeypatch.setattr(panel_db, "DATABASE_PATH", tmp_path / "panel.db")
    panel_db.init_db()
    panel_db.create_server_record({"id": "srv-1", "name": "Alpha", "port": 5520})


def test_new_record_defaults(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)

    record = panel_db.get_server_record("srv-1")

    assert record["status"] == "offline"
    assert record["pid"] is None
    assert record["install_state"] == panel_db.INSTALL_NOT_INSTALLED
    assert record["autostart"] is False
    assert panel_db.get_server_record("missing") is None


def test_concurrent_install_guard_admits_exactly_one(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)

    async def _race():
        return await asyncio.gather(
            asyncio.to_thread(panel_db.try_start_installation, "srv-1"),
            asyncio.to_thread(panel_db.try_start_installation, "srv-1"),
        )

    results = asyncio.run(_race())

    winners = [r for r in results if r["success"]]
    losers = [r for r in results if not r["success"]]
    assert len(winners) == 1
    assert len(losers) == 1
    assert "already in progress" in losers[0]["reason"]
    assert panel_db.get_server_record("srv-1")["install_state"] == panel_db.INSTALL_INSTALLING


def test_install_guard_reasons(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)

    assert panel_db.try_start_installation("missing") == {"success": False, "reason": "Server not found"}

    panel_db.update_install_state("srv-1", panel_db.INSTALL_INSTALLED, jar_path="/x.jar", assets_path="/a.zip")
    assert panel_db.try_start_installation("srv-1")["reason"] == "Server is already installed"

    panel_db.update_install_state("srv-1", panel_db.INSTALL_FAILED, "boom")
    assert panel_db.try_start_installation("srv-1") == {"success": True}
    record = panel_db.get_server_record("srv-1")
    assert record["last_error"] is None
    assert record["jar_path"] == "/x.jar"


def test_update_status_keeps_or_clears_pid(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)

    panel_db.update_status("srv-1", "online", 4242)
    panel_db.update_status("srv-1", "stopping")
    assert panel_db.get_server_record("srv-1")["pid"] == 4242

    panel_db.update_status("srv-1", "offline", None)
    record = panel_db.get_server_record("srv-1")
    assert record["status"] == "offline"
    assert record["pid"] is None


def test_recent_log_entries_are_newest_n_in_order(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)
    for i in range(5):
        panel_db.insert_log_entry("srv-1", "info", f"line {i}", timestamp=1000 + i)

    entries = panel_db.get_recent_log_entries("srv-1", limit=3)

    assert [e["message"] for e in entries] == ["line 2", "line 3", "line 4"]


def test_resource_samples_are_bounded(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)
    monkeypatch.setattr(panel_db, "STATS_RETENTION_ROWS", 3)

    for i in range(6):
        panel_db.insert_resource_sample("srv-1", cpu=float(i), memory=100.0, players=i, max_players=10)

    samples = panel_db.get_resource_samples("srv-1", limit=100)
    assert [s["cpu"] for s in samples] == [3.0, 4.0, 5.0]


def test_delete_cascades_to_logs_and_stats(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)
    panel_db.insert_log_entry("srv-1", "info", "hello")
    panel_db.insert_resource_sample("srv-1", 1.0, 2.0, 0, 10)

    assert panel_db.delete_server_record("srv-1") is True

    assert panel_db.get_recent_log_entries("srv-1") == []
    assert panel_db.get_resource_samples("srv-1") == []
    assert panel_db.delete_server_record("srv-1") is False


def test_update_server_fields_rejects_unknown_columns(monkeypatch, tmp_path):
    _init(monkeypatch, tmp_path)

    panel_db.update_server_fields("srv-1", name="Beta", autostart=True)
    record = panel_db.get_server_record("srv-1")
    assert record["name"] == "Beta"
    assert record["autostart"] is True

    with pytest.raises(ValueError):
        panel_db.update_server_fields("srv-1", status="online")
