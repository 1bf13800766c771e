"""
核心API路由
报告的增删改查、草稿/提交、图片解析视图、图库和图片上传
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, UploadFile

from core import global_state as gs
from core.config_loader import CONFIG
from modules.image_cache import LocalImageCache
from modules.image_processor import get_preset
from modules.models import ReportFormInput
from services.image_service import (
    ImageResolutionService,
    upload_multiple_images,
    validate_image_file,
)
from services.report_service import ReportNotFoundError, ReportService, ReportServiceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["reports"])


def get_report_service() -> ReportService:
    if gs.report_service is None:
        raise HTTPException(status_code=503, detail="Layanan laporan belum siap")
    return gs.report_service


def get_resolution_service() -> ImageResolutionService:
    if gs.resolution_service is None:
        raise HTTPException(status_code=503, detail="Layanan gambar belum siap")
    return gs.resolution_service


def get_image_cache() -> LocalImageCache:
    if gs.image_cache is None:
        raise HTTPException(status_code=503, detail="Cache gambar belum siap")
    return gs.image_cache


def _http_error(e: ReportServiceError) -> HTTPException:
    if isinstance(e, ReportNotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    return HTTPException(status_code=503, detail=e.message)


def _service_payload(response) -> dict:
    return {
        "success": response.success,
        "data": response.data.model_dump(by_alias=True) if response.data is not None else None,
        "message": response.message,
        "warning": response.warning,
    }


@router.get("/reports")
async def list_reports(service: ReportService = Depends(get_report_service)):
    try:
        reports = await service.list_reports()
    except ReportServiceError as e:
        raise _http_error(e)
    return {"success": True, "data": [r.model_dump(by_alias=True) for r in reports]}


@router.get("/reports/{report_id}")
async def get_report(
    report_id: str,
    resolve_images: bool = False,
    service: ReportService = Depends(get_report_service),
    resolution: ImageResolutionService = Depends(get_resolution_service),
):
    """读取报告；resolve_images=true 时把旧版图片引用解析成可直接显示的数据"""
    try:
        report = await service.get_report(report_id)
    except ReportServiceError as e:
        raise _http_error(e)
    if resolve_images:
        report = await resolution.resolve_report(report)
    return {"success": True, "data": report.model_dump(by_alias=True)}


@router.get("/reports/{report_id}/form")
async def get_report_form(report_id: str, service: ReportService = Depends(get_report_service)):
    try:
        report = await service.get_report(report_id)
    except ReportServiceError as e:
        raise _http_error(e)
    form = service.to_form_shape(report)
    return {
        "success": True,
        "data": form.model_dump(by_alias=True),
        "status": report.status,
    }


@router.post("/reports/draft")
async def save_draft(
    form: ReportFormInput,
    draft_id: Optional[str] = None,
    service: ReportService = Depends(get_report_service),
):
    try:
        response = await service.save_draft(form, draft_id)
    except ReportServiceError as e:
        raise _http_error(e)
    return _service_payload(response)


@router.post("/reports/submit")
async def submit_report(
    form: ReportFormInput,
    draft_id: Optional[str] = None,
    service: ReportService = Depends(get_report_service),
):
    try:
        response = await service.submit_report(form, draft_id)
    except ReportServiceError as e:
        raise _http_error(e)
    return _service_payload(response)


@router.patch("/reports/{report_id}")
async def update_report(
    report_id: str,
    partial_doc: dict = Body(...),
    service: ReportService = Depends(get_report_service),
):
    try:
        report = await service.update_report(report_id, partial_doc)
    except ReportServiceError as e:
        raise _http_error(e)
    return {"success": True, "data": report.model_dump(by_alias=True), "message": "Laporan berhasil diupdate"}


@router.delete("/reports/{report_id}")
async def delete_report(report_id: str, service: ReportService = Depends(get_report_service)):
    try:
        await service.delete_report(report_id)
    except ReportServiceError as e:
        raise _http_error(e)
    return {"success": True, "message": "Laporan berhasil dihapus"}


@router.get("/drafts/current")
async def get_current_draft(service: ReportService = Depends(get_report_service)):
    draft = await service.get_draft()
    if draft is None:
        raise HTTPException(status_code=404, detail="Tidak ada draft tersimpan")
    return {"success": True, "data": draft}


@router.delete("/drafts/current")
async def clear_current_draft(service: ReportService = Depends(get_report_service)):
    await service.clear_draft()
    return {"success": True, "message": "Draft berhasil dihapus"}


@router.get("/gallery")
async def get_gallery(
    service: ReportService = Depends(get_report_service),
    resolution: ImageResolutionService = Depends(get_resolution_service),
):
    try:
        reports = await service.list_reports()
    except ReportServiceError as e:
        raise _http_error(e)
    images = await resolution.collect_gallery_images(reports)
    return {
        "success": True,
        "data": [img.model_dump(by_alias=True) for img in images],
        "kegiatan": sorted({r.nama_kegiatan for r in reports}),
    }


@router.post("/images/upload")
async def upload_images(files: List[UploadFile] = File(...), path: str = "laporan"):
    """上传图片：启用图床时返回URL，否则返回压缩后的 base64 Data URI"""
    accepted = []
    rejected = []
    for upload in files:
        data = await upload.read()
        validation = validate_image_file(upload.filename, upload.content_type, len(data))
        if not validation.success:
            rejected.append({"file": upload.filename, "error": validation.error, "message": validation.message})
            continue
        accepted.append((upload.filename, data))

    presets = CONFIG.get("image_presets")
    result = await upload_multiple_images(
        accepted,
        path=path,
        blob_store=gs.blob_store,
        upload_preset=get_preset("upload", presets),
        inline_preset=get_preset("inline", presets),
    )
    return {
        "success": result.success,
        "data": result.data,
        "message": result.message,
        "rejected": rejected,
    }


@router.delete("/cache/images")
async def clear_image_cache(cache: LocalImageCache = Depends(get_image_cache)):
    removed = await asyncio.get_running_loop().run_in_executor(None, cache.clear)
    return {"success": True, "removed": removed}
