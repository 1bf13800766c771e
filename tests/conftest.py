"""
Pytest configuration and shared fixtures for the report service tests.
"""

import asyncio
import copy
import io
import threading
from types import SimpleNamespace
from typing import Dict, Optional, Set

import pytest
from PIL import Image

from core import config_loader
from modules import document_store as document_store_module
from modules.document_store import MemoryDocumentStore
from modules.image_cache import LocalImageCache
from modules.image_processor import image_to_base64
from modules.kv_store import MemoryKeyValueStore, SQLiteKeyValueStore
from modules.legacy_store import LegacyImageStore
from services.image_service import ImageResolutionService, LegacyImageResolver
from services.report_service import ReportService


def make_image_bytes(width: int = 64, height: int = 48, mode: str = "RGB", fmt: str = "PNG") -> bytes:
    """Generate a solid-colour image of the requested size."""
    color = (200, 30, 30, 128) if "A" in mode else (200, 30, 30)
    img = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def make_data_uri(width: int = 64, height: int = 48, mode: str = "RGB") -> str:
    return image_to_base64(make_image_bytes(width, height, mode), "image/png")


def image_size_of(data_uri: str):
    """Decode a data URI and return the (width, height) of the image inside."""
    from modules.image_processor import decode_base64_image

    image_bytes, _, error = decode_base64_image(data_uri)
    assert error is None
    with Image.open(io.BytesIO(image_bytes)) as img:
        return img.size


class FakeLegacyStore(LegacyImageStore):
    """In-memory legacy image store with per-key delays and failures."""

    def __init__(
        self,
        records: Optional[Dict[str, dict]] = None,
        delays: Optional[Dict[str, float]] = None,
        failing: Optional[Set[str]] = None,
        hanging: Optional[Set[str]] = None,
    ):
        self.records = records or {}
        self.delays = delays or {}
        self.failing = failing or set()
        self.hanging = hanging or set()
        self.reads = []
        self.cancelled = []

    async def read(self, collection: str, key: str) -> Optional[dict]:
        self.reads.append((collection, key))
        try:
            if key in self.hanging:
                await asyncio.Event().wait()
            if key in self.delays:
                await asyncio.sleep(self.delays[key])
        except asyncio.CancelledError:
            self.cancelled.append(key)
            raise
        if key in self.failing:
            raise ConnectionError(f"simulated outage for {key}")
        return self.records.get(key)

    async def write(self, collection: str, payload: str) -> str:
        key = f"k{len(self.records) + 1}"
        self.records[key] = {"data": payload}
        return key


@pytest.fixture
def images():
    """Image helpers for tests that need custom sizes."""
    return SimpleNamespace(
        make_bytes=make_image_bytes,
        make_data_uri=make_data_uri,
        size_of=image_size_of,
    )


class ThreadRecordingKeyValueStore(SQLiteKeyValueStore):
    """SQLite store that records which thread each call ran on."""

    def __init__(self, db_path, quota_bytes=None):
        self.calls = []
        super().__init__(db_path, quota_bytes)

    def _record(self, name):
        self.calls.append((name, threading.get_ident()))

    def get_item(self, key):
        self._record("get_item")
        return super().get_item(key)

    def set_item(self, key, value):
        self._record("set_item")
        super().set_item(key, value)

    def remove_item(self, key):
        self._record("remove_item")
        super().remove_item(key)


@pytest.fixture
def png_data_uri():
    """A small decodable PNG data URI."""
    return make_data_uri(64, 48)


@pytest.fixture
def large_png_bytes():
    """A PNG larger than every compression preset."""
    return make_image_bytes(2000, 1000)


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def thread_recording_kv_store(tmp_path):
    return ThreadRecordingKeyValueStore(tmp_path / "local_cache.db")


@pytest.fixture
def image_cache(kv_store):
    return LocalImageCache(kv_store)


@pytest.fixture
def document_store():
    return MemoryDocumentStore()


@pytest.fixture
def fake_legacy_store_cls():
    return FakeLegacyStore


@pytest.fixture
def legacy_store():
    return FakeLegacyStore(records={
        "k1": {"data": "data:image/jpeg;base64,BBB", "size": 3},
    })


@pytest.fixture
def resolution_service(legacy_store, image_cache):
    resolver = LegacyImageResolver(legacy_store, default_timeout_ms=1000)
    return ImageResolutionService(resolver, image_cache, batch_timeout_ms=1000)


@pytest.fixture
def report_service(document_store, kv_store):
    return ReportService(document_store, local_store=kv_store)


@pytest.fixture
def ticking_clock(monkeypatch):
    """Make document store timestamps strictly increasing, one second per write."""
    state = {"now": 1_700_000_000.0}

    def fake_time():
        state["now"] += 1
        return state["now"]

    monkeypatch.setattr(document_store_module, "time", SimpleNamespace(time=fake_time))
    return state


@pytest.fixture
def restore_config():
    """Snapshot the global CONFIG and restore it after the test."""
    snapshot = copy.deepcopy(config_loader.CONFIG)
    mtimes = dict(config_loader.CONFIG_FILE_MTIMES)
    yield config_loader.CONFIG
    config_loader.CONFIG.clear()
    config_loader.CONFIG.update(snapshot)
    config_loader.CONFIG_FILE_MTIMES.clear()
    config_loader.CONFIG_FILE_MTIMES.update(mtimes)


@pytest.fixture
def sample_form(png_data_uri):
    return {
        "namaKegiatan": "Rapat Koordinasi",
        "tanggal": "2024-03-01",
        "waktuMulai": "08:00",
        "waktuSelesai": "12:00",
        "lokasi": "Aula Utama",
        "deskripsi": "Pembahasan program kerja",
        "penanggungJawab": "Budi",
        "jabatanPenanggungJawab": "Ketua",
        "nipPenanggungJawab": "",
        "pendahuluan": "Latar belakang kegiatan",
        "sumberPendanaan": "APBD",
        "rekomendasi": "",
        "ucapanTerimakasih": "",
        "gambarPreview": [png_data_uri, "", "https://cdn.example.com/a.jpg"],
    }
