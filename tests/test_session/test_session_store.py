import json

from steerline.session import SessionIdentity, SessionRecord, SessionStore


def test_save_and_load_round_trip_uses_camel_case_on_disk(tmp_path):
    store = SessionStore(tmp_path)
    identity = SessionIdentity.create(42)
    record = SessionRecord(session_id="abc", total_queries=3, total_input_tokens=10)

    assert store.save(identity, record)

    raw = json.loads(store.path_for(identity).read_text(encoding="utf-8"))
    assert raw["totalQueries"] == 3
    assert raw["session_id"] == "abc"
    loaded = store.load(identity)
    assert loaded is not None
    assert loaded.total_queries == 3
    assert loaded.total_input_tokens == 10


def test_legacy_flat_files_are_ignored(tmp_path):
    (tmp_path / "12345.json").write_text('{"session_id": "legacy"}', encoding="utf-8")
    store = SessionStore(tmp_path)
    identity = SessionIdentity.create(7, thread=3)
    store.save(identity, SessionRecord(session_id="new"))

    assert store.list_identities() == [identity]
    assert store.list_keys() == ["default:7:3"]
    assert (tmp_path / "12345.json").exists()


def test_corrupt_record_loads_as_none(tmp_path):
    store = SessionStore(tmp_path)
    identity = SessionIdentity.create(42)
    store.path_for(identity).write_text("{not json", encoding="utf-8")

    assert store.load(identity) is None


def test_delete(tmp_path):
    store = SessionStore(tmp_path)
    identity = SessionIdentity.create(42)
    store.save(identity, SessionRecord(session_id="abc"))

    assert store.delete(identity)
    assert not store.exists(identity)
    assert not store.delete(identity)
