import json

def test_read_since_none_returns_everything_in_order(change_log):
    for n in (1, 2, 3):
        change_log.append({"n": n})

    records = change_log.read_since(None)
    assert [r.id for r in records] == [1, 2, 3]
    assert [r.payload for r in records] == [{"n": 1}, {"n": 2}, {"n": 3}]

def test_read_since_is_strictly_after_checkpoint(change_log):
    ids = [change_log.append({"n": n}) for n in range(10)]

    for checkpoint in [None] + ids:
        records = change_log.read_since(checkpoint)
        returned = [r.id for r in records]
        assert all(checkpoint is None or i > checkpoint for i in returned)
        assert returned == sorted(set(returned))

    assert change_log.read_since(ids[-1]) == []

def test_read_since_on_empty_log(change_log):
    assert change_log.read_since(None) == []
    assert change_log.read_since(42) == []

def test_read_since_respects_limit(change_log):
    for n in range(5):
        change_log.append(n)

    assert [r.id for r in change_log.read_since(None, limit=2)] == [1, 2]
    assert [r.id for r in change_log.read_since(2, limit=2)] == [3, 4]

def test_compact_archives_and_never_reuses_ids(change_log, tmp_path):
    for n in range(3):
        change_log.append({"n": n})
    archive = tmp_path / "archive.jsonl"

    assert change_log.compact(2, archive_file=str(archive)) == 2
    assert [r.id for r in change_log.read_since(None)] == [3]

    archived = [json.loads(line) for line in archive.read_text().splitlines()]
    assert [r["id"] for r in archived] == [1, 2]

    assert change_log.append({"n": 3}) == 4
    assert change_log.compact(0) == 0

def test_checkpoint_only_moves_forward(checkpoints):
    assert checkpoints.get() is None
    assert checkpoints.advance(5) is True
    assert checkpoints.advance(3) is False
    assert checkpoints.advance(5) is False
    assert checkpoints.get() == 5
