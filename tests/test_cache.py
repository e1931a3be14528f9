import io
import os
import tarfile

from flowci.cache import CacheStore, compute_cache_key


def _write(root, rel, text):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_round_trip_restores_identical_contents(tmp_path):
    producer = tmp_path / "producer"
    consumer = tmp_path / "consumer"
    consumer.mkdir()
    _write(producer, "venv/lib/a.txt", "alpha")
    _write(producer, "venv/bin/tool", "#!/bin/sh\n")
    _write(producer, "venv/__pycache__/x.pyc", "junk")

    store = CacheStore(tmp_path / "cache")
    manifest = store.save("deps", ["venv"], workspace=producer)
    hit = store.restore("deps", workspace=consumer)

    assert manifest["files"] == ["venv/bin/tool", "venv/lib/a.txt"]
    assert hit.hit
    assert (consumer / "venv/lib/a.txt").read_text() == "alpha"
    assert (consumer / "venv/bin/tool").read_text() == "#!/bin/sh\n"
    assert not (consumer / "venv/__pycache__").exists()


def test_miss_is_not_an_error(tmp_path):
    store = CacheStore(tmp_path / "cache")
    hit = store.restore("never-saved", workspace=tmp_path)
    assert not hit.hit
    assert hit.reason == "cache miss"


def test_archive_escaping_the_workspace_is_refused(tmp_path):
    store = CacheStore(tmp_path / "cache")
    workspace = tmp_path / "ws"
    workspace.mkdir()
    payload = b"owned"
    with tarfile.open(store.artifact_path("evil"), mode="w:gz") as tar:
        info = tarfile.TarInfo("../outside.txt")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    store.manifest_path("evil").write_text("{}")

    hit = store.restore("evil", workspace=workspace)

    assert not hit.hit
    assert hit.reason.startswith("cache exists but restore failed")
    assert not (tmp_path / "outside.txt").exists()


def test_corrupt_archive_is_a_miss(tmp_path):
    store = CacheStore(tmp_path / "cache")
    store.artifact_path("broken").write_bytes(b"not a tarball")
    store.manifest_path("broken").write_text("{}")

    hit = store.restore("broken", workspace=tmp_path)

    assert not hit.hit
    assert "restore failed" in hit.reason


def test_same_key_last_writer_wins(tmp_path, capsys):
    store = CacheStore(tmp_path / "cache")
    ws = tmp_path / "ws"
    _write(ws, "out/v.txt", "first")
    store.save("k", ["out"], workspace=ws)
    _write(ws, "out/v.txt", "second")
    store.save("k", ["out"], workspace=ws)

    restored = tmp_path / "restored"
    restored.mkdir()
    store.restore("k", workspace=restored)

    assert (restored / "out/v.txt").read_text() == "second"
    assert "last writer wins" in capsys.readouterr().err
    assert list((tmp_path / "cache").glob("*.tmp")) == []


def test_cache_key_follows_file_contents(tmp_path):
    _write(tmp_path, "requirements.txt", "click==8.1\n")
    first = compute_cache_key("pip", workspace=tmp_path, hash_files=["requirements.txt"])
    again = compute_cache_key("pip", workspace=tmp_path, hash_files=["requirements.txt"])
    _write(tmp_path, "requirements.txt", "click==8.2\n")
    changed = compute_cache_key("pip", workspace=tmp_path, hash_files=["requirements.txt"])

    assert first == again
    assert first != changed
    assert first.startswith("pip-")
    assert compute_cache_key("pip", workspace=tmp_path) == "pip"


def test_prune_keeps_newest(tmp_path):
    store = CacheStore(tmp_path / "cache", keep=1)
    ws = tmp_path / "ws"
    _write(ws, "f.txt", "x")
    store.save("old", ["f.txt"], workspace=ws)
    store.save("new", ["f.txt"], workspace=ws)
    old_tar = store.artifact_path("old")
    os.utime(old_tar, (1, 1))
    store.flush()

    assert not store.contains("old")
    assert store.contains("new")
