"""
图片处理服务模块
负责图片引用解析（旧版数据库 + 本地缓存）、批量解析超时降级、图片上传图床/内联降级
"""

import asyncio
import logging
import mimetypes
import re
import time
from functools import partial
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from modules.file_uploader import BlobStore, BlobUploadError
from modules.image_cache import LocalImageCache
from modules.image_processor import (
    CompressionPreset,
    INLINE_PRESET,
    UPLOAD_PRESET,
    compress_with_preset,
    decode_base64_image,
    image_to_base64,
)
from modules.image_refs import ImageRef, ImageRefKind, classify, classify_all, legacy_key_of
from modules.legacy_store import LegacyImageStore
from modules.models import ActivityDay, GalleryImage, Report, ServiceResponse

logger = logging.getLogger(__name__)

DEFAULT_BATCH_TIMEOUT_MS = 5000
DEFAULT_FETCH_TIMEOUT_MS = 10000

ALLOWED_IMAGE_TYPES = ('image/jpeg', 'image/jpg', 'image/png', 'image/gif', 'image/webp')


class LegacyImageResolver:
    """
    从旧版数据库按键读取图片，与计时器赛跑，先完成者胜出。
    超时、记录不存在、请求出错都返回 None，不抛异常，也不负责缓存。
    """

    def __init__(
        self,
        store: Optional[LegacyImageStore],
        collection: str = "images",
        default_timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS
    ):
        self.store = store
        self.collection = collection
        self.default_timeout_ms = default_timeout_ms

    async def resolve(self, key: str, timeout_ms: Optional[int] = None) -> Optional[str]:
        if self.store is None:
            logger.debug(f"[LEGACY] 未配置旧版数据库，跳过: {key}")
            return None

        key = legacy_key_of(key)
        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        start_time = time.time()
        try:
            record = await asyncio.wait_for(
                self.store.read(self.collection, key),
                timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            logger.warning(f"[LEGACY] ❌ 读取超时 ({timeout_ms}ms): {key}")
            return None
        except Exception as e:
            logger.warning(f"[LEGACY] ❌ 读取失败: {key}: {type(e).__name__}: {e}")
            return None

        if not record:
            logger.info(f"[LEGACY] 记录不存在: {key}")
            return None

        payload = record.get("data") if isinstance(record, dict) else None
        if not isinstance(payload, str) or not payload:
            logger.warning(f"[LEGACY] 记录中没有图片数据: {key}")
            return None

        logger.info(f"[LEGACY] ✅ 已读取 {key} ({len(payload)/1024:.1f}KB, {time.time() - start_time:.2f}秒)")
        return payload


class ImageResolutionService:
    """
    批量图片解析

    只有旧版 rtdb:// 引用需要异步解析；全部已迁移（内联或URL）时直接返回，不走超时逻辑。
    """

    def __init__(
        self,
        resolver: LegacyImageResolver,
        cache: Optional[LocalImageCache] = None,
        batch_timeout_ms: int = DEFAULT_BATCH_TIMEOUT_MS
    ):
        self.resolver = resolver
        self.cache = cache
        self.batch_timeout_ms = batch_timeout_ms

    async def resolve_image(self, ref: str) -> Optional[str]:
        """解析单个引用：缓存 -> 旧版数据库 -> 写入缓存。无法解析返回 None"""
        image_ref = classify(ref)
        if image_ref.kind is ImageRefKind.EMPTY:
            return None
        if image_ref.is_renderable:
            return image_ref.raw

        key = image_ref.legacy_key
        cached = await self._cache_call("get", key)
        if cached:
            return cached

        payload = await self.resolver.resolve(key)
        if not payload or not classify(payload).is_renderable:
            return None
        await self._cache_call("put", key, payload)
        return payload

    async def _cache_call(self, method: str, *args):
        """本地缓存可能是 SQLite，放到线程池执行，避免阻塞事件循环"""
        if self.cache is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(getattr(self.cache, method), *args))

    async def resolve_all(self, refs: Sequence[str], timeout_ms: Optional[int] = None) -> List[str]:
        """解析一组引用，保持顺序，无法解析或超时的条目直接丢弃"""
        return (await self._resolve_groups([refs], timeout_ms))[0]

    async def resolve_day_images(
        self,
        days: Sequence[ActivityDay],
        timeout_ms: Optional[int] = None
    ) -> List[ActivityDay]:
        """解析一份报告所有天的图片，整份报告共用一个超时"""
        groups = [day.gambar for day in days]
        resolved_groups = await self._resolve_groups(groups, timeout_ms)
        return [
            day.model_copy(update={"gambar": resolved})
            for day, resolved in zip(days, resolved_groups)
        ]

    async def resolve_report(self, report: Report, timeout_ms: Optional[int] = None) -> Report:
        days = await self.resolve_day_images(report.uraian_kegiatan, timeout_ms)
        return report.model_copy(update={"uraian_kegiatan": days})

    async def _resolve_groups(self, groups: Sequence[Sequence[str]], timeout_ms: Optional[int]) -> List[List[str]]:
        classified: List[List[ImageRef]] = [classify_all(group) for group in groups]

        legacy_positions: List[Tuple[int, int]] = [
            (g, i)
            for g, group in enumerate(classified)
            for i, ref in enumerate(group)
            if ref.kind is ImageRefKind.LEGACY
        ]

        if not legacy_positions:
            # 快速路径：不涉及任何异步操作
            results = []
            for original, group in zip(groups, classified):
                if all(ref.is_renderable for ref in group) and isinstance(original, list):
                    results.append(original)
                else:
                    results.append([ref.raw for ref in group if ref.is_renderable])
            return results

        timeout_ms = self.batch_timeout_ms if timeout_ms is None else timeout_ms
        tasks: Dict[Tuple[int, int], asyncio.Task] = {
            pos: asyncio.ensure_future(self.resolve_image(classified[pos[0]][pos[1]].raw))
            for pos in legacy_positions
        }

        logger.info(f"[IMG_RESOLVE] 开始解析 {len(tasks)} 个旧版图片引用 (超时 {timeout_ms}ms)")
        done, pending = await asyncio.wait(tasks.values(), timeout=max(timeout_ms, 0) / 1000)

        if pending:
            logger.warning(f"[IMG_RESOLVE] ⏱️ 批量解析超时，跳过 {len(pending)} 个未完成的旧版图片")
            for task in pending:
                task.cancel()

        resolved: Dict[Tuple[int, int], str] = {}
        for pos, task in tasks.items():
            if task not in done or task.cancelled():
                continue
            if task.exception() is not None:
                logger.warning(f"[IMG_RESOLVE] 解析出错: {task.exception()}")
                continue
            value = task.result()
            if value and classify(value).is_renderable:
                resolved[pos] = value

        results = []
        for g, group in enumerate(classified):
            output = []
            for i, ref in enumerate(group):
                if ref.is_renderable:
                    output.append(ref.raw)
                elif (g, i) in resolved:
                    output.append(resolved[(g, i)])
            results.append(output)

        logger.info(
            f"[IMG_RESOLVE] 解析完成: 旧版引用 {len(resolved)}/{len(tasks)} 成功"
        )
        return results

    async def collect_gallery_images(self, reports: Iterable[Report]) -> List[GalleryImage]:
        """汇总所有报告中可显示的图片（用于图库页面）"""
        reports = list(reports)
        resolved_reports = await asyncio.gather(*(self.resolve_report(r) for r in reports))

        images: List[GalleryImage] = []
        for report in resolved_reports:
            for day in report.uraian_kegiatan:
                for src in day.gambar:
                    images.append(GalleryImage(
                        src=src,
                        laporan_id=report.id or "",
                        nama_kegiatan=report.nama_kegiatan,
                        tanggal=day.tanggal,
                        hari=day.hari,
                    ))
        return images


def validate_image_file(
    filename: str,
    content_type: Optional[str],
    size: int,
    max_size_mb: float = 5
) -> ServiceResponse:
    """上传前校验图片格式和大小"""
    mime_type = content_type or mimetypes.guess_type(filename or "")[0]
    if mime_type not in ALLOWED_IMAGE_TYPES:
        return ServiceResponse(
            success=False,
            error="Format file tidak didukung",
            message="Gunakan format JPG, PNG, GIF, atau WebP",
        )
    if size > max_size_mb * 1024 * 1024:
        return ServiceResponse(
            success=False,
            error="Ukuran file terlalu besar",
            message=f"Maksimal ukuran file adalah {max_size_mb}MB",
        )
    return ServiceResponse(success=True, message="File valid")


def _storage_file_name(filename: str, path: str) -> str:
    safe_name = re.sub(r'[^a-zA-Z0-9.]', '_', filename or "image")
    return f"{path}/{int(time.time() * 1000)}_{safe_name}"


async def _compress_in_executor(data: bytes, preset: CompressionPreset):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(compress_with_preset, data, preset))


async def upload_image(
    data: bytes,
    filename: str,
    path: str = "laporan",
    blob_store: Optional[BlobStore] = None,
    upload_preset: CompressionPreset = UPLOAD_PRESET,
    inline_preset: CompressionPreset = INLINE_PRESET,
) -> ServiceResponse[str]:
    """
    上传单张图片

    有图床时：按 upload 预设压缩后上传，返回URL；
    图床未启用或上传失败时：按 inline 预设压缩并返回 base64 Data URI。
    """
    if blob_store is not None:
        try:
            compressed = await _compress_in_executor(data, upload_preset)
            if isinstance(compressed, str):
                upload_bytes, mime_type, _ = decode_base64_image(compressed)
            else:
                upload_bytes = data
                mime_type = mimetypes.guess_type(filename or "")[0] or 'image/jpeg'
            url = await blob_store.upload(upload_bytes, _storage_file_name(filename, path), mime_type)
            return ServiceResponse(success=True, data=url, message="Gambar berhasil diupload ke storage")
        except BlobUploadError as e:
            logger.error(f"[IMG_UPLOAD] 图床上传失败，降级为base64: {e}")
        except Exception as e:
            logger.error(f"[IMG_UPLOAD] 图片处理异常，降级为base64: {type(e).__name__}: {e}", exc_info=True)

    return await _upload_image_as_base64(data, filename, inline_preset)


async def _upload_image_as_base64(data: bytes, filename: str, preset: CompressionPreset) -> ServiceResponse[str]:
    try:
        compressed = await _compress_in_executor(data, preset)
        if isinstance(compressed, str):
            return ServiceResponse(success=True, data=compressed, message="Gambar berhasil dikompres dan diproses")
    except Exception as e:
        logger.warning(f"[IMG_UPLOAD] 压缩失败，使用原图: {type(e).__name__}: {e}")

    if not data:
        return ServiceResponse(success=False, error="Gagal membaca file gambar", message="Error saat memproses gambar")
    mime_type = mimetypes.guess_type(filename or "")[0] or 'image/png'
    return ServiceResponse(success=True, data=image_to_base64(data, mime_type), message="Gambar berhasil diproses")


async def upload_multiple_images(
    files: Sequence[Tuple[str, bytes]],
    path: str = "laporan",
    blob_store: Optional[BlobStore] = None,
    upload_preset: CompressionPreset = UPLOAD_PRESET,
    inline_preset: CompressionPreset = INLINE_PRESET,
) -> ServiceResponse[List[str]]:
    """并发上传多张图片，部分失败时仍返回成功的结果"""
    results = await asyncio.gather(*(
        upload_image(data, filename, path, blob_store, upload_preset, inline_preset)
        for filename, data in files
    ))
    successful = [r.data for r in results if r.success and r.data]
    failed_count = sum(1 for r in results if not r.success)

    if failed_count:
        message = f"{len(successful)} gambar berhasil, {failed_count} gagal"
    else:
        message = f"{len(successful)} gambar berhasil diupload"
    return ServiceResponse(success=True, data=successful, message=message)
