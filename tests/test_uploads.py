import asyncio
import os
import re

import pytest

from reel_server.cleanup import CleanupScheduler
from reel_server.errors import UploadNotFoundError
from reel_server.uploads import UploadStore, upload_extension


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    return d


@pytest.mark.parametrize("filename,expected", [
    ("voice.wav", ".wav"),
    ("VOICE.MP3", ".mp3"),
    (None, ".mp3"),
    ("noext", ".mp3"),
    ("weird.ext with space", ".mp3"),
    ("../../etc/passwd.m4a", ".m4a"),
])
def test_upload_extension(filename, expected):
    assert upload_extension(filename) == expected


class TestUploadStore:
    def test_store_then_resolve(self, upload_dir):
        clock = FakeClock()
        store = UploadStore(str(upload_dir), retention=1800, clock=clock)

        asset = store.store(b"RIFF....", "lipsync.wav")

        assert re.fullmatch(r"[0-9a-f]{16}", asset.id)
        assert asset.filename == f"{asset.id}.wav"
        assert asset.expires_at == clock.now + 1800
        assert store.resolve(asset.filename).read_bytes() == b"RIFF...."

    def test_expired_asset_not_served_even_if_file_remains(self, upload_dir):
        clock = FakeClock()
        store = UploadStore(str(upload_dir), retention=1800, clock=clock)
        asset = store.store(b"data", "a.mp3")

        clock.now += 1800

        assert asset.path.exists()
        with pytest.raises(UploadNotFoundError):
            store.resolve(asset.filename)

    def test_deleted_file_is_not_found(self, upload_dir):
        store = UploadStore(str(upload_dir))
        asset = store.store(b"data", "a.mp3")
        os.remove(asset.path)

        with pytest.raises(UploadNotFoundError):
            store.resolve(asset.filename)

    @pytest.mark.parametrize("name", [
        "../secret.mp3",
        "/etc/passwd",
        "0123456789abcdef.mp3/../../x",
        "notanid.mp3",
        "",
    ])
    def test_only_generated_names_resolve(self, upload_dir, name):
        (upload_dir.parent / "secret.mp3").write_bytes(b"nope")
        store = UploadStore(str(upload_dir))

        with pytest.raises(UploadNotFoundError):
            store.resolve(name)

    def test_leftover_file_expires_by_mtime(self, upload_dir):
        path = upload_dir / "0123456789abcdef.mp3"
        path.write_bytes(b"old")
        os.utime(path, (1000.0, 1000.0))
        clock = FakeClock(now=1000.0 + 60)
        store = UploadStore(str(upload_dir), retention=1800, clock=clock)

        assert store.resolve(path.name) == path
        clock.now = 1000.0 + 1800
        with pytest.raises(UploadNotFoundError):
            store.resolve(path.name)

    def test_store_schedules_deletion_after_retention(self, upload_dir):
        async def scenario():
            cleanup = CleanupScheduler()
            store = UploadStore(str(upload_dir), retention=1800, cleanup=cleanup)
            asset = store.store(b"data", "a.mp3")
            pending = cleanup.pending
            await cleanup.run_now()
            return asset, pending

        asset, pending = asyncio.run(scenario())

        assert pending == [str(asset.path)]
        assert not asset.path.exists()

    def test_expires_in_label(self, upload_dir):
        assert UploadStore(str(upload_dir), retention=1800).expires_in == "30m"

    def test_registry_forgets_assets_once_deleted(self, upload_dir):
        async def scenario():
            cleanup = CleanupScheduler()
            store = UploadStore(str(upload_dir), retention=0.01, cleanup=cleanup)
            for i in range(20):
                store.store(b"data", f"take{i}.wav")
            before = store.registered
            await cleanup.wait()
            return before, store.registered

        before, after = asyncio.run(scenario())

        assert before == 20
        assert after == 0
        assert os.listdir(upload_dir) == []

    def test_shutdown_cleanup_also_forgets_assets(self, upload_dir):
        async def scenario():
            cleanup = CleanupScheduler()
            store = UploadStore(str(upload_dir), retention=1800, cleanup=cleanup)
            store.store(b"data", "a.mp3")
            await cleanup.run_now()
            return store.registered

        assert asyncio.run(scenario()) == 0
