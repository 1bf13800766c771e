"""
Unit tests for ReportService: write preparation, draft/submit flow and error mapping.
"""

import json
import threading
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from modules.document_store import MemoryDocumentStore, PersistenceError
from modules.kv_store import MemoryKeyValueStore
from modules.models import ActivityDay, Executor, Report, ReportFormInput
from services.report_service import (
    DRAFT_STASH_KEY,
    ReportNotFoundError,
    ReportService,
    ReportServiceError,
    WriteStats,
    normalize_timestamps,
    sanitize_for_store,
)


def _report_with_images(gambar):
    return Report(
        nama_kegiatan="Rapat",
        pendahuluan="",
        uraian_kegiatan=[ActivityDay(hari=1, tanggal="2024-03-01", deskripsi="", gambar=gambar)],
    )


@pytest.mark.unit
class TestSanitize:
    def test_required_fields_keep_empty_strings(self):
        doc = {
            "namaKegiatan": "",
            "pendahuluan": "",
            "rekomendasi": "",
            "lampiran": [],
            "createdBy": None,
            "uraianKegiatan": [{"deskripsi": "", "tanggal": "", "gambar": ["", None]}],
        }
        assert sanitize_for_store(doc) == {
            "namaKegiatan": "",
            "pendahuluan": "",
            "uraianKegiatan": [{"deskripsi": ""}],
        }

    def test_datetimes_become_iso_strings(self):
        moment = datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)
        assert sanitize_for_store({"createdAt": moment}) == {"createdAt": "2024-03-01T08:30:00+00:00"}

    def test_normalize_timestamps(self):
        doc = normalize_timestamps({
            "createdAt": datetime(2024, 3, 1, tzinfo=timezone.utc),
            "updatedAt": 0,
            "namaKegiatan": "x",
        })
        assert doc["createdAt"] == "2024-03-01T00:00:00+00:00"
        assert doc["updatedAt"] == "1970-01-01T00:00:00+00:00"
        assert doc["namaKegiatan"] == "x"


@pytest.mark.unit
class TestPrepareForWrite:
    @pytest.mark.asyncio
    async def test_empty_entries_are_removed(self, report_service):
        report = _report_with_images(["", None, "data:image/png;base64,AAA"])

        doc, stats = await report_service.prepare_for_write(report)

        # AAA 无法解码，压缩时原样保留
        assert doc["uraianKegiatan"][0]["gambar"] == ["data:image/png;base64,AAA"]
        assert (stats.total_count, stats.failed_count) == (1, 0)
        assert stats.warning is None

    @pytest.mark.asyncio
    async def test_inline_images_are_compressed_remote_kept(self, report_service, images):
        large = images.make_data_uri(1800, 900)
        report = _report_with_images([large, "https://x/y.jpg", "rtdb://k1"])

        doc, stats = await report_service.prepare_for_write(report)

        gambar = doc["uraianKegiatan"][0]["gambar"]
        assert gambar[0].startswith("data:image/jpeg;base64,")
        assert images.size_of(gambar[0]) == (600, 300)
        assert gambar[1:] == ["https://x/y.jpg", "rtdb://k1"]
        assert "id" not in doc

    @pytest.mark.asyncio
    async def test_oversized_image_is_dropped_and_counted(self, document_store, images):
        service = ReportService(document_store, max_inline_image_kb=0)
        report = _report_with_images([images.make_data_uri(300, 300), "https://x/y.jpg"])

        doc, stats = await service.prepare_for_write(report)

        assert doc["uraianKegiatan"][0]["gambar"] == ["https://x/y.jpg"]
        assert (stats.total_count, stats.failed_count) == (1, 1)
        assert stats.warning.startswith("1 dari 1 gambar gagal")

    @pytest.mark.asyncio
    async def test_reloaded_config_applies_to_next_write(self, report_service, restore_config, images):
        report = _report_with_images([images.make_data_uri(1800, 900)])

        first, _ = await report_service.prepare_for_write(report)
        restore_config["image_presets"] = {"storage": {"max_dimension_px": 300, "quality": 0.5}}
        second, _ = await report_service.prepare_for_write(report)
        restore_config["max_inline_image_kb"] = 0
        third, stats = await report_service.prepare_for_write(report)

        assert images.size_of(first["uraianKegiatan"][0]["gambar"][0]) == (600, 300)
        assert images.size_of(second["uraianKegiatan"][0]["gambar"][0]) == (300, 150)
        assert "gambar" not in third["uraianKegiatan"][0]
        assert stats.failed_count == 1

    def test_write_stats_warning(self):
        assert WriteStats(3, 0).warning is None
        assert "2 dari 5 gambar" in WriteStats(5, 2).warning


@pytest.mark.unit
class TestShapeConversion:
    def test_form_to_document_and_back(self, sample_form):
        form = ReportFormInput.model_validate(sample_form)

        report = ReportService.to_document_shape(form, submit=True)

        assert report.status == "submitted"
        assert report.tempat_pelaksanaan == "Aula Utama"
        assert report.pelaksana == [Executor(nama="Budi", jabatan="Ketua", nip="")]
        assert len(report.uraian_kegiatan) == 1
        assert report.uraian_kegiatan[0].gambar == [sample_form["gambarPreview"][0], "https://cdn.example.com/a.jpg"]

        back = ReportService.to_form_shape(report)
        assert back.nama_kegiatan == form.nama_kegiatan
        assert back.lokasi == form.lokasi
        assert back.deskripsi == form.deskripsi
        assert back.gambar_preview == report.uraian_kegiatan[0].gambar

    def test_form_shape_uses_first_day(self):
        report = Report(
            nama_kegiatan="Multi",
            uraian_kegiatan=[
                ActivityDay(hari=1, tanggal="2024-01-01", deskripsi="satu", gambar=["https://x/1.jpg"]),
                ActivityDay(hari=2, tanggal="2024-01-02", deskripsi="dua", gambar=["https://x/2.jpg"]),
            ],
        )
        form = ReportService.to_form_shape(report)
        assert (form.tanggal, form.deskripsi, form.gambar_preview) == ("2024-01-01", "satu", ["https://x/1.jpg"])

    def test_form_shape_of_empty_report(self):
        form = ReportService.to_form_shape({})
        assert form.nama_kegiatan == ""
        assert form.gambar_preview == []


@pytest.mark.unit
class TestDraftAndSubmit:
    @pytest.mark.asyncio
    async def test_submit_reuses_draft_document(self, report_service, document_store, kv_store, sample_form):
        draft = await report_service.save_draft(sample_form)
        assert draft.success
        assert draft.data.status == "draft"
        assert json.loads(kv_store.get_item(DRAFT_STASH_KEY))["documentId"] == draft.data.id

        submitted = await report_service.submit_report(ReportFormInput.model_validate(sample_form))

        assert submitted.data.id == draft.data.id
        assert submitted.data.status == "submitted"
        assert document_store.count("laporan") == 1
        assert kv_store.get_item(DRAFT_STASH_KEY) is None

    @pytest.mark.asyncio
    async def test_repeated_drafts_update_in_place(self, report_service, document_store, sample_form):
        first = await report_service.save_draft(sample_form)
        sample_form["namaKegiatan"] = "Rapat Lanjutan"
        second = await report_service.save_draft(sample_form)

        assert first.data.id == second.data.id
        assert second.data.nama_kegiatan == "Rapat Lanjutan"
        assert document_store.count("laporan") == 1

    @pytest.mark.asyncio
    async def test_explicit_draft_id_without_local_store(self, document_store, sample_form):
        service = ReportService(document_store)
        draft = await service.save_draft(sample_form)
        submitted = await service.submit_report(ReportFormInput.model_validate(sample_form), draft_id=draft.data.id)

        assert submitted.data.id == draft.data.id
        assert document_store.count("laporan") == 1

    @pytest.mark.asyncio
    async def test_submit_unknown_draft_id(self, report_service, sample_form):
        with pytest.raises(ReportNotFoundError):
            await report_service.submit_report(ReportFormInput.model_validate(sample_form), draft_id="missing")

    @pytest.mark.asyncio
    async def test_saved_images_are_compressed(self, report_service, sample_form):
        draft = await report_service.save_draft(sample_form)
        gambar = draft.data.uraian_kegiatan[0].gambar
        assert gambar[0].startswith("data:image/jpeg;base64,")
        assert gambar[1] == "https://cdn.example.com/a.jpg"

    @pytest.mark.asyncio
    async def test_get_draft_and_clear(self, report_service, sample_form):
        assert await report_service.get_draft() is None
        await report_service.save_draft(sample_form)
        assert (await report_service.get_draft())["namaKegiatan"] == "Rapat Koordinasi"
        await report_service.clear_draft()
        assert await report_service.get_draft() is None

    @pytest.mark.asyncio
    async def test_corrupt_stash_is_ignored(self, report_service, kv_store):
        kv_store.set_item(DRAFT_STASH_KEY, "{not json")
        assert await report_service.get_draft() is None

    @pytest.mark.asyncio
    async def test_deleting_stashed_report_clears_stash(self, report_service, document_store, kv_store, sample_form):
        first = await report_service.save_draft(sample_form)
        await report_service.delete_report(first.data.id)

        assert kv_store.get_item(DRAFT_STASH_KEY) is None
        second = await report_service.save_draft(sample_form)

        assert second.success
        assert second.data.id != first.data.id
        assert document_store.count("laporan") == 1

    @pytest.mark.asyncio
    async def test_deleting_other_report_keeps_stash(self, report_service, kv_store, sample_form):
        other = await report_service.submit_report(ReportFormInput.model_validate(sample_form))
        draft = await report_service.save_draft(sample_form)

        await report_service.delete_report(other.data.id)

        assert json.loads(kv_store.get_item(DRAFT_STASH_KEY))["documentId"] == draft.data.id

    @pytest.mark.asyncio
    async def test_stale_stash_falls_back_to_create(self, report_service, document_store, kv_store, sample_form):
        kv_store.set_item(DRAFT_STASH_KEY, json.dumps({"documentId": "gone"}))

        draft = await report_service.save_draft(sample_form)

        assert draft.data.id != "gone"
        assert document_store.count("laporan") == 1
        assert json.loads(kv_store.get_item(DRAFT_STASH_KEY))["documentId"] == draft.data.id

    @pytest.mark.asyncio
    async def test_submit_with_stale_stash_creates_document(self, report_service, document_store, kv_store, sample_form):
        kv_store.set_item(DRAFT_STASH_KEY, json.dumps({"documentId": "gone"}))

        submitted = await report_service.submit_report(ReportFormInput.model_validate(sample_form))

        assert submitted.data.status == "submitted"
        assert document_store.count("laporan") == 1
        assert kv_store.get_item(DRAFT_STASH_KEY) is None

    @pytest.mark.asyncio
    async def test_stash_io_runs_off_the_event_loop(self, document_store, thread_recording_kv_store, sample_form):
        loop_thread = threading.get_ident()
        service = ReportService(document_store, local_store=thread_recording_kv_store)

        draft = await service.save_draft(sample_form)
        await service.submit_report(ReportFormInput.model_validate(sample_form))

        assert draft.success
        names = {name for name, _ in thread_recording_kv_store.calls}
        assert {"get_item", "set_item", "remove_item"} <= names
        assert all(thread_id != loop_thread for _, thread_id in thread_recording_kv_store.calls)


@pytest.mark.unit
class TestReads:
    @pytest.mark.asyncio
    async def test_list_newest_first_with_iso_timestamps(self, report_service, sample_form, ticking_clock):
        older = await report_service.submit_report(dict(ReportService.to_document_shape(sample_form).to_document()))
        newer = await report_service.submit_report(dict(ReportService.to_document_shape(sample_form).to_document()))

        reports = await report_service.list_reports()

        assert [r.id for r in reports] == [newer.data.id, older.data.id]
        for report in reports:
            assert isinstance(report.created_at, str)
            assert datetime.fromisoformat(report.created_at).tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing_report(self, report_service):
        with pytest.raises(ReportNotFoundError):
            await report_service.get_report("missing")

    @pytest.mark.asyncio
    async def test_update_and_delete(self, report_service, sample_form):
        draft = await report_service.save_draft(sample_form)

        updated = await report_service.update_report(draft.data.id, {"status": "approved", "rekomendasi": "Lanjutkan"})
        assert updated.status == "approved"
        assert updated.rekomendasi == "Lanjutkan"

        await report_service.delete_report(draft.data.id)
        with pytest.raises(ReportNotFoundError):
            await report_service.get_report(draft.data.id)

    @pytest.mark.asyncio
    async def test_update_missing_report(self, report_service):
        with pytest.raises(ReportNotFoundError):
            await report_service.update_report("missing", {"status": "approved"})


@pytest.mark.unit
class TestStoreOutage:
    @pytest.fixture
    def broken_service(self):
        store = AsyncMock()
        for method in ("create", "get", "update", "delete", "query_all"):
            getattr(store, method).side_effect = PersistenceError("unavailable")
        return ReportService(store, local_store=MemoryKeyValueStore())

    @pytest.mark.asyncio
    async def test_list(self, broken_service):
        with pytest.raises(ReportServiceError):
            await broken_service.list_reports()

    @pytest.mark.asyncio
    async def test_get(self, broken_service):
        with pytest.raises(ReportServiceError) as exc_info:
            await broken_service.get_report("r1")
        assert not isinstance(exc_info.value, ReportNotFoundError)

    @pytest.mark.asyncio
    async def test_save_draft(self, broken_service, sample_form):
        with pytest.raises(ReportServiceError):
            await broken_service.save_draft(sample_form)
        assert await broken_service.get_draft() is None

    @pytest.mark.asyncio
    async def test_delete(self, broken_service):
        with pytest.raises(ReportServiceError):
            await broken_service.delete_report("r1")
