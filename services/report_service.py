"""
报告服务模块
报告的增删改查、草稿/提交，以及写入前的图片压缩与数据清理
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, List, Optional, Tuple, Union

from core.config_loader import CONFIG
from modules.document_store import DocumentNotFound, DocumentStore, PersistenceError
from modules.image_processor import CompressionPreset, compress_with_preset, estimate_payload_bytes, get_preset
from modules.image_refs import ImageRefKind, classify
from modules.kv_store import KeyValueStore
from modules.models import ActivityDay, Executor, Report, ReportFormInput, ServiceResponse

logger = logging.getLogger(__name__)

REPORT_COLLECTION = "laporan"
DRAFT_STASH_KEY = "report_draft_data"
DEFAULT_MAX_INLINE_IMAGE_KB = 900

# 必填字段即使为空字符串也保留
REQUIRED_FIELDS = ('namaKegiatan', 'pendahuluan', 'deskripsi')


class ReportServiceError(Exception):
    """存储不可用等导致报告操作失败"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ReportNotFoundError(ReportServiceError):
    pass


class ImageTooLargeError(Exception):
    pass


@dataclass
class WriteStats:
    total_count: int = 0
    failed_count: int = 0

    @property
    def warning(self) -> Optional[str]:
        if not self.failed_count:
            return None
        return (
            f"{self.failed_count} dari {self.total_count} gambar gagal diproses. "
            f"Pastikan koneksi internet stabil dan coba lagi."
        )


def _to_iso(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    return value


def normalize_timestamps(doc: dict) -> dict:
    """存储端时间戳统一转换为 ISO-8601 字符串"""
    doc = dict(doc)
    for field in ("createdAt", "updatedAt"):
        if field in doc:
            doc[field] = _to_iso(doc[field])
    return doc


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)) and len(value) == 0:
        return True
    return False


def sanitize_for_store(obj: Any, key: Optional[str] = None) -> Any:
    """
    清理写入数据：去掉 None、空字符串（必填字段除外）、空列表和空对象，datetime 转为 ISO 字符串。
    返回 None 表示该值应被丢弃。
    """
    if obj is None:
        return None

    if isinstance(obj, datetime):
        return _to_iso(obj)

    if isinstance(obj, dict):
        sanitized = {}
        for obj_key, value in obj.items():
            if value is None:
                continue
            if value == '' and obj_key not in REQUIRED_FIELDS:
                continue
            sanitized_value = sanitize_for_store(value, obj_key)
            if _is_empty(sanitized_value):
                continue
            sanitized[obj_key] = sanitized_value
        return sanitized

    if isinstance(obj, (list, tuple)):
        items = []
        for item in obj:
            if item is None or item == '':
                continue
            sanitized_item = sanitize_for_store(item)
            if _is_empty(sanitized_item):
                continue
            items.append(sanitized_item)
        return items

    return obj


def _as_document(report: Union[Report, dict]) -> dict:
    if isinstance(report, Report):
        return report.model_dump(by_alias=True, exclude_none=True)
    return json.loads(json.dumps(report, default=_to_iso))


class ReportService:
    """报告持久化适配器"""

    def __init__(
        self,
        store: DocumentStore,
        local_store: Optional[KeyValueStore] = None,
        collection: str = REPORT_COLLECTION,
        storage_preset: Optional[CompressionPreset] = None,
        max_inline_image_kb: Optional[int] = None,
    ):
        """storage_preset / max_inline_image_kb 为 None 时，每次写入都从 CONFIG 读取（支持热更新）"""
        self.store = store
        self.local_store = local_store
        self.collection = collection
        self.storage_preset = storage_preset
        self.max_inline_image_kb = max_inline_image_kb

    # ---------- 写入准备 ----------

    def _current_limits(self) -> Tuple[CompressionPreset, int]:
        preset = self.storage_preset or get_preset("storage", CONFIG.get("image_presets"))
        max_kb = self.max_inline_image_kb
        if max_kb is None:
            max_kb = CONFIG.get("max_inline_image_kb", DEFAULT_MAX_INLINE_IMAGE_KB)
        return preset, max_kb

    @staticmethod
    def _compress_for_storage(payload: str, preset: CompressionPreset, max_kb: int) -> str:
        compressed = compress_with_preset(payload, preset)
        if not isinstance(compressed, str):
            raise ImageTooLargeError("压缩结果不是 data URI")
        size_kb = estimate_payload_bytes(compressed) / 1024
        if size_kb > max_kb:
            raise ImageTooLargeError(f"压缩后仍有 {size_kb:.1f}KB，超过上限 {max_kb}KB")
        return compressed

    async def _process_images(self, doc: dict) -> WriteStats:
        stats = WriteStats()
        loop = asyncio.get_running_loop()
        preset, max_kb = self._current_limits()

        for day in doc.get("uraianKegiatan") or []:
            if not isinstance(day, dict) or not isinstance(day.get("gambar"), list):
                continue

            kept: List[str] = []
            for gambar in day["gambar"]:
                ref = classify(gambar)
                if ref.kind is ImageRefKind.INLINE:
                    stats.total_count += 1
                    try:
                        compressed = await loop.run_in_executor(
                            None, partial(self._compress_for_storage, ref.raw, preset, max_kb)
                        )
                        kept.append(compressed)
                    except Exception as e:
                        stats.failed_count += 1
                        logger.error(f"[REPORT] 图片压缩失败，已丢弃: {type(e).__name__}: {e}")
                elif ref.kind in (ImageRefKind.REMOTE, ImageRefKind.LEGACY):
                    kept.append(ref.raw)

            day["gambar"] = kept
        return stats

    async def prepare_for_write(self, report: Union[Report, dict]) -> Tuple[dict, WriteStats]:
        """压缩内联图片并清理数据，返回 (可写入的文档, 统计)"""
        doc = _as_document(report)
        doc.pop("id", None)
        stats = await self._process_images(doc)
        sanitized = sanitize_for_store(doc) or {}
        if stats.total_count:
            logger.info(f"[REPORT] 图片处理完成: {stats.total_count - stats.failed_count}/{stats.total_count} 成功")
        return sanitized, stats

    # ---------- 形态转换 ----------

    @staticmethod
    def to_document_shape(form: Union[ReportFormInput, dict], submit: bool = False) -> Report:
        """表单形态 -> 报告文档（单天）"""
        if isinstance(form, dict):
            form = ReportFormInput.model_validate(form)

        valid_images = [img for img in form.gambar_preview if isinstance(img, str) and img]
        now = datetime.now(timezone.utc).isoformat()
        return Report(
            nama_kegiatan=form.nama_kegiatan,
            pendahuluan=form.pendahuluan,
            waktu_mulai=form.waktu_mulai,
            waktu_selesai=form.waktu_selesai,
            tempat_pelaksanaan=form.lokasi,
            pelaksana=[Executor(
                nama=form.penanggung_jawab,
                jabatan=form.jabatan_penanggung_jawab,
                nip=form.nip_penanggung_jawab or "",
            )],
            sumber_pendanaan=form.sumber_pendanaan,
            uraian_kegiatan=[ActivityDay(
                hari=1,
                tanggal=form.tanggal,
                deskripsi=form.deskripsi,
                gambar=valid_images,
            )],
            rekomendasi=form.rekomendasi,
            ucapan_terimakasih=form.ucapan_terimakasih,
            created_at=now,
            updated_at=now,
            status="submitted" if submit else "draft",
        )

    @staticmethod
    def to_form_shape(report: Union[Report, dict]) -> ReportFormInput:
        """报告文档 -> 表单形态（多天报告只取第一天）"""
        if isinstance(report, dict):
            report = Report.model_validate(report)

        first_day = report.uraian_kegiatan[0] if report.uraian_kegiatan else ActivityDay()
        executor = report.pelaksana[0] if report.pelaksana else Executor()
        return ReportFormInput(
            nama_kegiatan=report.nama_kegiatan,
            tanggal=first_day.tanggal,
            waktu_mulai=report.waktu_mulai,
            waktu_selesai=report.waktu_selesai,
            lokasi=report.tempat_pelaksanaan,
            deskripsi=first_day.deskripsi,
            penanggung_jawab=executor.nama,
            jabatan_penanggung_jawab=executor.jabatan,
            nip_penanggung_jawab=executor.nip or "",
            pendahuluan=report.pendahuluan,
            sumber_pendanaan=report.sumber_pendanaan,
            rekomendasi=report.rekomendasi,
            ucapan_terimakasih=report.ucapan_terimakasih,
            gambar_preview=[img for img in first_day.gambar if img],
        )

    # ---------- 读取 ----------

    def _to_report(self, doc: dict) -> Report:
        return Report.model_validate(normalize_timestamps(doc))

    async def get_report(self, report_id: str) -> Report:
        try:
            doc = await self.store.get(self.collection, report_id)
        except PersistenceError as e:
            logger.error(f"[REPORT] 读取报告失败 {report_id}: {e}")
            raise ReportServiceError(f"Gagal memuat laporan: {e}") from e
        if doc is None:
            raise ReportNotFoundError("Laporan tidak ditemukan")
        return self._to_report(doc)

    async def list_reports(self) -> List[Report]:
        try:
            docs = await self.store.query_all(self.collection, "createdAt", True)
        except PersistenceError as e:
            logger.error(f"[REPORT] 读取报告列表失败: {e}")
            raise ReportServiceError(f"Gagal memuat daftar laporan: {e}") from e
        return [self._to_report(doc) for doc in docs]

    # ---------- 写入 ----------

    async def _write(self, doc: dict, status: str, existing_id: Optional[str], from_stash: bool = False) -> str:
        doc = dict(doc, status=status)
        try:
            if existing_id:
                logger.info(f"[REPORT] 更新已有文档: {existing_id}")
                try:
                    await self.store.update(self.collection, existing_id, doc)
                    return existing_id
                except DocumentNotFound:
                    if not from_stash:
                        raise
                    # 本地草稿记录指向的文档已被删除，改为新建
                    logger.warning(f"[REPORT] 草稿记录中的文档 {existing_id} 已不存在，清除记录并新建")
                    await self.clear_draft()
            doc_id = await self.store.create(self.collection, doc)
            logger.info(f"[REPORT] 新建文档: {doc_id}")
            return doc_id
        except DocumentNotFound as e:
            raise ReportNotFoundError("Laporan tidak ditemukan") from e
        except PersistenceError as e:
            logger.error(f"[REPORT] 写入失败: {e}")
            raise ReportServiceError(f"Gagal menyimpan laporan: {e}") from e

    async def save_draft(
        self,
        form: Union[ReportFormInput, dict],
        draft_id: Optional[str] = None
    ) -> ServiceResponse[Report]:
        """保存草稿；已知文档ID（参数或本地草稿记录）时更新，否则新建"""
        if isinstance(form, dict):
            form = ReportFormInput.model_validate(form)

        report = self.to_document_shape(form, submit=False)
        existing_id = draft_id or await self._stashed_draft_id()

        doc, stats = await self.prepare_for_write(report)
        doc_id = await self._write(doc, "draft", existing_id, from_stash=not draft_id)

        saved = await self._read_back(doc_id, report.model_copy(update={"id": doc_id, "status": "draft"}))
        await self._stash_draft(form, doc_id)
        return ServiceResponse(
            success=True,
            data=saved,
            message="Draft berhasil disimpan ke database",
            warning=stats.warning,
        )

    async def submit_report(
        self,
        report: Union[Report, ReportFormInput, dict],
        draft_id: Optional[str] = None
    ) -> ServiceResponse[Report]:
        """提交报告；存在草稿文档时在原文档上更新，不会重复创建"""
        if isinstance(report, ReportFormInput):
            report = self.to_document_shape(report, submit=True)
        elif isinstance(report, dict):
            report = Report.model_validate(report)

        explicit_id = draft_id or report.id
        existing_id = explicit_id or await self._stashed_draft_id()

        doc, stats = await self.prepare_for_write(report)
        doc_id = await self._write(doc, "submitted", existing_id, from_stash=not explicit_id)

        saved = await self._read_back(doc_id, report.model_copy(update={"id": doc_id, "status": "submitted"}))
        await self.clear_draft()
        return ServiceResponse(
            success=True,
            data=saved,
            message="Laporan berhasil disimpan ke database",
            warning=stats.warning,
        )

    async def _read_back(self, doc_id: str, fallback: Report) -> Report:
        try:
            doc = await self.store.get(self.collection, doc_id)
        except PersistenceError as e:
            logger.warning(f"[REPORT] 写入后回读失败 {doc_id}: {e}")
            return fallback
        return self._to_report(doc) if doc else fallback

    async def update_report(self, report_id: str, partial_doc: dict) -> Report:
        sanitized = sanitize_for_store(_as_document(partial_doc)) or {}
        sanitized.pop("id", None)
        try:
            await self.store.update(self.collection, report_id, sanitized)
        except DocumentNotFound as e:
            raise ReportNotFoundError("Laporan tidak ditemukan") from e
        except PersistenceError as e:
            logger.error(f"[REPORT] 更新报告失败 {report_id}: {e}")
            raise ReportServiceError(f"Gagal mengupdate laporan: {e}") from e
        return await self.get_report(report_id)

    async def delete_report(self, report_id: str) -> None:
        try:
            await self.store.delete(self.collection, report_id)
        except PersistenceError as e:
            logger.error(f"[REPORT] 删除报告失败 {report_id}: {e}")
            raise ReportServiceError(f"Gagal menghapus laporan: {e}") from e
        logger.info(f"[REPORT] 已删除报告: {report_id}")
        if await self._stashed_draft_id() == report_id:
            await self.clear_draft()

    # ---------- 本地草稿记录 ----------
    # 本地存储可能是 SQLite，统一放到线程池执行

    async def _run_local(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    async def _stash_draft(self, form: ReportFormInput, doc_id: str) -> None:
        if self.local_store is None:
            return
        stash = form.model_dump(by_alias=True)
        stash.update({
            "documentId": doc_id,
            "savedAt": datetime.now(timezone.utc).isoformat(),
        })
        try:
            await self._run_local(self.local_store.set_item, DRAFT_STASH_KEY, json.dumps(stash, ensure_ascii=False))
        except Exception as e:
            # 草稿记录只是便利功能，文档已写入成功
            logger.warning(f"[REPORT] 本地草稿记录保存失败: {e}")

    async def get_draft(self) -> Optional[dict]:
        if self.local_store is None:
            return None
        raw = await self._run_local(self.local_store.get_item, DRAFT_STASH_KEY)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[REPORT] 本地草稿记录已损坏，忽略")
            return None

    async def _stashed_draft_id(self) -> Optional[str]:
        draft = await self.get_draft()
        return draft.get("documentId") if draft else None

    async def clear_draft(self) -> None:
        if self.local_store is not None:
            await self._run_local(self.local_store.remove_item, DRAFT_STASH_KEY)
