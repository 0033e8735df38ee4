"""Tests for the JSON-backed incident store."""
from __future__ import annotations

import json

import pytest

from incident_store import (
    IncidentNotFound,
    IncidentStateError,
    IncidentStore,
    InvalidIncidentField,
    normalize_priority,
    normalize_status,
)

GUILD = 1234
ACTOR = {"actor_id": 42, "actor_name": "Staffer"}


@pytest.fixture
def store(tmp_path):
    return IncidentStore(str(tmp_path / "incidents.json"))


def _add(store, title="Database down", priority="medium", guild=GUILD):
    return store.add_incident(
        guild,
        incident_type="Technical",
        title=title,
        description="Primary database is unreachable.",
        reporter_id=7,
        reporter_name="reporter#0001",
        priority=priority,
    )


def test_missing_file_is_created(tmp_path):
    path = tmp_path / "incidents.json"
    IncidentStore(str(path))
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_corrupt_and_empty_files_start_empty(tmp_path):
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json", encoding="utf-8")
    empty = tmp_path / "empty.json"
    empty.write_text("", encoding="utf-8")
    assert IncidentStore(str(corrupt)).data == {}
    assert IncidentStore(str(empty)).data == {}


def test_undecodable_file_starts_empty(tmp_path):
    path = tmp_path / "incidents.json"
    path.write_bytes(b'{"1": {"incidents": [], "overview_message": "\xff\xfe"}}')
    store = IncidentStore(str(path))
    assert store.data == {}
    assert store.count_incidents() == 0


def test_malformed_guild_entries_are_repaired(tmp_path):
    path = tmp_path / "incidents.json"
    path.write_text(json.dumps({"1": {"incidents": None}, "2": "junk", "3": {"incidents": [5, {"id": 100001, "status": "open", "priority": "low"}], "overview_message": 7}}), encoding="utf-8")
    store = IncidentStore(str(path))
    assert store.count_incidents() == 1
    assert store.list_incidents(1) == []
    assert [i["id"] for i in store.list_incidents(3)] == [100001]
    assert store.get_overview_message(3) is None
    incident = _add(store, guild=1)
    assert store.count_incidents(1) == 1
    assert incident["id"] != 100001


def test_add_incident_defaults_and_persists(store, tmp_path):
    incident = _add(store, title="  Padded title  ")
    assert 100000 <= incident["id"] <= 999999
    assert incident["status"] == "open"
    assert incident["title"] == "Padded title"
    assert incident["history"][0]["action"] == "created"

    reloaded = IncidentStore(store.path)
    assert reloaded.get_incident(GUILD, incident["id"])["title"] == "Padded title"


def test_ids_are_unique(store, monkeypatch):
    first = _add(store)
    ids = iter([first["id"], first["id"], 555555])
    monkeypatch.setattr("incident_store.random.randint", lambda a, b: next(ids))
    second = _add(store, title="Second")
    assert second["id"] == 555555


def test_invalid_fields_rejected(store):
    with pytest.raises(InvalidIncidentField):
        _add(store, title="   ")
    with pytest.raises(InvalidIncidentField):
        _add(store, priority="urgent")
    with pytest.raises(InvalidIncidentField):
        _add(store, title="x" * 101)
    assert store.count_incidents(GUILD) == 0


def test_normalizers_are_case_insensitive():
    assert normalize_status(" Resolved ") == "resolved"
    assert normalize_priority("HIGH") == "high"
    with pytest.raises(ValueError):
        normalize_status("closed")


def test_get_unknown_incident(store):
    with pytest.raises(IncidentNotFound):
        store.get_incident(GUILD, 111111)


def test_incidents_are_scoped_per_guild(store):
    incident = _add(store)
    with pytest.raises(IncidentNotFound):
        store.get_incident(999, incident["id"])
    assert store.count_incidents(999) == 0
    assert store.count_incidents() == 1


def test_list_sorted_by_priority_then_newest(store):
    low = _add(store, title="low", priority="low")
    crit = _add(store, title="crit", priority="critical")
    med_old = _add(store, title="med old")
    med_new = _add(store, title="med new")
    med_old["created_at"] = "2020-01-01T00:00:00+00:00"
    order = [i["id"] for i in store.list_incidents(GUILD)]
    assert order == [crit["id"], med_new["id"], med_old["id"], low["id"]]


def test_list_filters(store):
    keep = _add(store)
    done = _add(store, title="done")
    store.resolve_incident(GUILD, done["id"], **ACTOR)
    assert [i["id"] for i in store.list_incidents(GUILD, include_resolved=False)] == [keep["id"]]
    assert [i["id"] for i in store.list_incidents(GUILD, status="resolved")] == [done["id"]]


def test_update_records_single_history_entry(store):
    incident = _add(store)
    store.update_incident(GUILD, incident["id"], title="New title", priority="High", **ACTOR)
    assert incident["title"] == "New title"
    assert incident["priority"] == "high"
    assert incident["history"][-1]["action"] == "edited"
    assert "title" in incident["history"][-1]["detail"]
    assert len(incident["history"]) == 2


def test_update_noop_and_validation(store):
    incident = _add(store)
    store.update_incident(GUILD, incident["id"], title="Database down", **ACTOR)
    assert len(incident["history"]) == 1

    with pytest.raises(InvalidIncidentField):
        store.update_incident(GUILD, incident["id"], title="Fine", status="bogus", **ACTOR)
    assert incident["title"] == "Database down"  # nothing applied on failure

    with pytest.raises(InvalidIncidentField):
        store.update_incident(GUILD, incident["id"], reporter_id=1, **ACTOR)


def test_status_changes_track_resolution(store):
    incident = _add(store)
    store.set_status(GUILD, incident["id"], "investigating", **ACTOR)
    assert incident["resolved_at"] is None
    store.resolve_incident(GUILD, incident["id"], **ACTOR)
    assert incident["status"] == "resolved"
    assert incident["resolved_at"]

    with pytest.raises(IncidentStateError):
        store.resolve_incident(GUILD, incident["id"], **ACTOR)

    store.reopen_incident(GUILD, incident["id"], **ACTOR)
    assert incident["status"] == "open"
    assert incident["resolved_at"] is None
    with pytest.raises(IncidentStateError):
        store.reopen_incident(GUILD, incident["id"], **ACTOR)


def test_assign_and_unassign(store):
    incident = _add(store)
    store.assign_incident(GUILD, incident["id"], 99, "Helper", **ACTOR)
    assert (incident["assignee_id"], incident["assignee_name"]) == (99, "Helper")
    store.assign_incident(GUILD, incident["id"], None, "ignored", **ACTOR)
    assert (incident["assignee_id"], incident["assignee_name"]) == (None, None)
    assert [h["action"] for h in incident["history"]] == ["created", "assigned", "assigned"]


def test_add_note(store):
    incident = _add(store)
    store.add_note(GUILD, incident["id"], "  Restarted replica  ", **ACTOR)
    assert incident["notes"][0]["text"] == "Restarted replica"
    assert incident["notes"][0]["author_name"] == "Staffer"
    with pytest.raises(InvalidIncidentField):
        store.add_note(GUILD, incident["id"], "", **ACTOR)


def test_remove_incident(store):
    incident = _add(store)
    removed = store.remove_incident(GUILD, incident["id"])
    assert removed["id"] == incident["id"]
    assert store.list_incidents(GUILD) == []
    with pytest.raises(IncidentNotFound):
        store.remove_incident(GUILD, incident["id"])


def test_message_pointers(store):
    incident = _add(store)
    store.set_incident_message(GUILD, incident["id"], 10, 20)
    assert incident["message"] == {"channel_id": 10, "message_id": 20}
    assert store.get_overview_message(GUILD) is None
    store.set_overview_message(GUILD, 10, 30)
    assert IncidentStore(store.path).get_overview_message(GUILD) == {"channel_id": 10, "message_id": 30}
    store.set_overview_message(GUILD, None, None)
    assert store.get_overview_message(GUILD) is None


def test_update_callback_runs_after_each_change(store):
    calls = []
    store.set_update_callback(lambda: calls.append(store.count_incidents()))
    incident = _add(store)
    store.resolve_incident(GUILD, incident["id"], **ACTOR)
    store.remove_incident(GUILD, incident["id"])
    assert calls == [1, 0, 0]


def test_failing_callback_does_not_break_store(store):
    def boom():
        raise RuntimeError("presence failed")

    store.set_update_callback(boom)
    incident = _add(store)
    assert store.get_incident(GUILD, incident["id"])


def test_stats(store):
    _add(store, priority="critical")
    _add(store, priority="low")
    done = _add(store, priority="critical")
    store.resolve_incident(GUILD, done["id"], **ACTOR)
    stats = store.stats(GUILD)
    assert stats["total"] == 3
    assert stats["open"] == 2
    assert stats["by_status"]["resolved"] == 1
    assert stats["open_by_priority"] == {"low": 1, "medium": 0, "high": 0, "critical": 1}
