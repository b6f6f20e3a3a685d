"""LocalStorageProvider objects and the shared track/group index."""

import json

import pytest

from shared.constants import GROUPS_INDEX_KEY, TRACKS_INDEX_KEY
from shared.errors import OriginExitError, StorageError
from shared.models import Group, TrackInfo, TrackRecord

KEY = "audio/dQw4w9WgXcQ.mp3"


def _record(content_id, title="Title", created_at=None):
    record = TrackRecord.from_info(content_id, f"audio/{content_id}.mp3", TrackInfo(title=title, author="Artist"))
    if created_at:
        record.created_at = created_at
    return record


def test_write_then_read(store):
    written = store.write(KEY, [b"abc", b"def"])
    assert written == 6
    assert store.exists(KEY)
    assert b"".join(store.read(KEY)) == b"abcdef"


def test_failed_stream_publishes_nothing(store):
    def stream():
        yield b"half"
        raise OriginExitError(1, "boom")

    with pytest.raises(OriginExitError):
        store.write(KEY, stream())

    assert not store.exists(KEY)
    assert list((store.base_path / "audio").glob("*")) == []


def test_object_invisible_while_writing(store):
    seen = []

    def stream():
        yield b"first"
        seen.append(store.exists(KEY))
        yield b"second"

    store.write(KEY, stream())
    assert seen == [False]
    assert store.exists(KEY)


def test_read_missing_raises(store):
    with pytest.raises(StorageError):
        store.read("audio/missing.mp3")


def test_key_escaping_root_is_rejected(store):
    with pytest.raises(StorageError):
        store.exists("../outside.mp3")


def test_locator_is_file_url(store):
    store.write(KEY, [b"x"])
    locator = store.issue_access_locator(KEY, ttl=60)
    assert locator.startswith("file://")
    assert locator.endswith(KEY)


def test_delete_is_idempotent(store):
    store.write(KEY, [b"x"])
    store.delete(KEY)
    store.delete(KEY)
    assert not store.exists(KEY)


def test_put_metadata_merges_and_keeps_created_at(store):
    first = store.put_metadata(_record("dQw4w9WgXcQ", title="Old", created_at="2024-01-01T00:00:00.000Z"))
    assert first.created_at == "2024-01-01T00:00:00.000Z"

    second = store.put_metadata(_record("dQw4w9WgXcQ", title="New"))
    assert second.title == "New"
    assert second.created_at == "2024-01-01T00:00:00.000Z"
    assert second.updated_at >= first.updated_at

    raw = json.loads(store.download_json(TRACKS_INDEX_KEY))
    assert set(raw) == {"dQw4w9WgXcQ"}
    assert raw["dQw4w9WgXcQ"]["storageKey"] == KEY


def test_list_metadata_newest_first(store):
    store.put_metadata(_record("aaaaaaaaaaa", created_at="2024-01-01T00:00:00.000Z"))
    store.put_metadata(_record("bbbbbbbbbbb", created_at="2024-03-01T00:00:00.000Z"))
    store.put_metadata(_record("ccccccccccc", created_at="2024-02-01T00:00:00.000Z"))

    assert [r.content_id for r in store.list_metadata()] == ["bbbbbbbbbbb", "ccccccccccc", "aaaaaaaaaaa"]


def test_legacy_video_id_entries_load(store):
    store.upload_json(json.dumps({
        "dQw4w9WgXcQ": {"videoId": "dQw4w9WgXcQ", "storageKey": KEY, "title": "", "createdAt": "2024-01-01T00:00:00.000Z"}
    }), TRACKS_INDEX_KEY)

    record = store.get_metadata("dQw4w9WgXcQ")
    assert record.content_id == "dQw4w9WgXcQ"
    assert record.title == "dQw4w9WgXcQ"
    assert record.author == "Unknown"


def test_corrupt_index_raises(store):
    store.upload_json("{not json", TRACKS_INDEX_KEY)
    with pytest.raises(StorageError, match="Corrupt"):
        store.get_metadata("dQw4w9WgXcQ")


def test_delete_track_removes_object_entry_and_memberships(store):
    store.write(KEY, [b"x"])
    store.put_metadata(_record("dQw4w9WgXcQ"))
    store.put_metadata(_record("9bZkp7q19f0"))
    store.save_groups([
        Group(id="g1", name="Party", track_ids=["dQw4w9WgXcQ", "9bZkp7q19f0"]),
        Group(id="g2", name="Other", track_ids=["9bZkp7q19f0"]),
    ])

    assert store.delete_track("dQw4w9WgXcQ") is True

    assert not store.exists(KEY)
    assert store.get_metadata("dQw4w9WgXcQ") is None
    assert store.get_metadata("9bZkp7q19f0") is not None
    groups = {g.id: g for g in store.list_groups()}
    assert groups["g1"].track_ids == ["9bZkp7q19f0"]
    assert groups["g2"].track_ids == ["9bZkp7q19f0"]


def test_delete_unknown_track(store):
    assert store.delete_track("dQw4w9WgXcQ") is False


def test_groups_round_trip_as_json_array(store):
    assert store.list_groups() == []
    store.save_groups([Group(id="g1", name="Mix", track_ids=["dQw4w9WgXcQ"])])

    raw = json.loads(store.download_json(GROUPS_INDEX_KEY))
    assert isinstance(raw, list)
    assert raw[0]["trackIds"] == ["dQw4w9WgXcQ"]
    assert store.list_groups()[0].name == "Mix"
