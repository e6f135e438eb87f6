from concurrent.futures import ThreadPoolExecutor

import pytest

from changepoll.monitor.storage import CASDocument, ConflictError

NUM_WORKERS = 5
NUM_INCREMENTS = 20

def test_concurrent_increments_lose_no_updates(tmp_path):
    filename_base = str(tmp_path / "counter")
    CASDocument(filename_base)

    def worker(_):
        # Each worker gets its own instance pointing to the same files
        cas_obj = CASDocument(filename_base)
        for _ in range(NUM_INCREMENTS):
            def increment_counter(data):
                data["counter"] = data.get("counter", 0) + 1
            cas_obj.transact(increment_counter, max_retries=50, base_delay=0.001, max_delay=0.02)

    with ThreadPoolExecutor(max_workers=NUM_WORKERS) as executor:
        list(executor.map(worker, range(NUM_WORKERS)))

    data, version = CASDocument(filename_base).read()
    assert data["counter"] == NUM_WORKERS * NUM_INCREMENTS
    assert version == NUM_WORKERS * NUM_INCREMENTS

def test_cas_write_rejects_stale_version(tmp_path):
    doc = CASDocument(str(tmp_path / "doc"))
    _, version = doc.read()

    assert doc.cas_write({"a": 1}, version) == (True, version + 1)
    assert doc.cas_write({"a": 2}, version) == (False, version + 1)
    assert doc.read() == ({"a": 1}, version + 1)

def test_transact_returns_result_and_skips_noop_writes(tmp_path):
    doc = CASDocument(str(tmp_path / "doc"))

    def put(data):
        data["key"] = "value"
        return "written"

    assert doc.transact(put) == "written"
    _, version = doc.read()

    assert doc.transact(put) == "written"
    assert doc.read() == ({"key": "value"}, version)

def test_transact_gives_up_after_max_retries(tmp_path, monkeypatch):
    doc = CASDocument(str(tmp_path / "doc"))
    monkeypatch.setattr(doc, "cas_write", lambda new_data, expected_version: (False, expected_version + 1))
    monkeypatch.setattr("changepoll.monitor.storage.time.sleep", lambda _: None)

    def put(data):
        data["key"] = "value"

    with pytest.raises(ConflictError):
        doc.transact(put, max_retries=3)

def test_transact_does_not_leak_partial_mutation(tmp_path):
    doc = CASDocument(str(tmp_path / "doc"))
    doc.transact(lambda data: data.update({"items": [1]}))

    def bad(data):
        data["items"].append(2)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        doc.transact(bad)
    assert doc.read()[0] == {"items": [1]}
