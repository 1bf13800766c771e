# file_bed_server/main.py
"""
图床服务器
接收 base64 Data URI 形式的图片，按 upload 预设压缩后保存，并通过 /uploads 提供访问。
报告会长期引用上传后的URL，默认不清理；只有 file_max_age_minutes > 0 时才启动后台清理任务。
"""
import logging
import mimetypes
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from core.config_loader import CONFIG, get_section, load_config
from core.logging_config import setup_logging
from modules.image_processor import compress_with_preset, decode_base64_image, get_preset

setup_logging()
logger = logging.getLogger(__name__)

# --- 路径配置 ---
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_UPLOAD_DIR = os.path.join(BASE_DIR, "uploads")

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.webp', '.bmp', '.gif', '.tiff')


class UploadRequest(BaseModel):
    file_name: str
    file_data: str  # 完整的 base64 data URI
    api_key: Optional[str] = None


def cleanup_old_files(upload_dir: str, max_age_minutes: float) -> int:
    """删除上传目录中超过保留时间的文件，返回删除数量"""
    cutoff = time.time() - (max_age_minutes * 60)
    logger.info(f"正在运行清理任务，删除早于 {datetime.fromtimestamp(cutoff).strftime('%Y-%m-%d %H:%M:%S')} 的文件...")

    deleted_count = 0
    for filename in os.listdir(upload_dir):
        file_path = os.path.join(upload_dir, filename)
        if not os.path.isfile(file_path):
            continue
        try:
            if os.path.getmtime(file_path) < cutoff:
                os.remove(file_path)
                logger.info(f"已删除过期文件: {filename}")
                deleted_count += 1
        except OSError as e:
            logger.error(f"删除文件 '{file_path}' 时出错: {e}")

    if deleted_count > 0:
        logger.info(f"清理任务完成，共删除了 {deleted_count} 个文件。")
    else:
        logger.info("清理任务完成，没有找到需要删除的文件。")
    return deleted_count


def _guess_extension(file_name: str, mime_type: str) -> str:
    file_extension = os.path.splitext(file_name)[1]
    if file_extension:
        return file_extension
    return mimetypes.guess_extension(mime_type or "") or '.bin'


def create_app(
    upload_dir: Optional[str] = None,
    api_key: Optional[str] = None,
    cleanup_interval_minutes: Optional[float] = None,
    file_max_age_minutes: Optional[float] = None,
    compress_uploads: Optional[bool] = None,
) -> FastAPI:
    """创建图床应用；参数为空时取 config.jsonc 中 file_bed_server 节的值"""
    server_config = get_section("file_bed_server")
    upload_dir = upload_dir or server_config.get("upload_dir") or DEFAULT_UPLOAD_DIR
    api_key = api_key if api_key is not None else server_config.get("api_key")
    if cleanup_interval_minutes is None:
        cleanup_interval_minutes = server_config.get("cleanup_interval_minutes", 60)
    if file_max_age_minutes is None:
        file_max_age_minutes = server_config.get("file_max_age_minutes", 0)
    if compress_uploads is None:
        compress_uploads = server_config.get("compress_uploads", True)
    upload_preset = get_preset("upload", CONFIG.get("image_presets"))

    os.makedirs(upload_dir, exist_ok=True)

    scheduler = BackgroundScheduler(timezone="UTC")
    cleanup_enabled = bool(file_max_age_minutes) and file_max_age_minutes > 0

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """配置了保留时间时，在服务器启动时启动清理任务，在关闭时停止。"""
        if not cleanup_enabled:
            logger.info("文件自动清理未启用，上传的文件将一直保留。")
            yield
            return
        scheduler.add_job(
            cleanup_old_files, 'interval',
            minutes=cleanup_interval_minutes,
            args=[upload_dir, file_max_age_minutes],
        )
        scheduler.start()
        logger.info(
            f"后台文件清理任务已启动，每 {cleanup_interval_minutes} 分钟运行一次，"
            f"删除超过 {file_max_age_minutes} 分钟的文件。"
        )
        yield
        scheduler.shutdown()
        logger.info("后台文件清理任务已停止。")

    app = FastAPI(lifespan=lifespan)
    app.state.upload_dir = upload_dir
    app.state.scheduler = scheduler
    app.state.cleanup_enabled = cleanup_enabled
    app.mount("/uploads", StaticFiles(directory=upload_dir), name="uploads")

    @app.post("/upload")
    async def upload_file(request: UploadRequest):
        """接收 base64 编码的文件并保存，返回唯一文件名"""
        if api_key and request.api_key != api_key:
            raise HTTPException(status_code=401, detail="无效的 API Key")

        file_data, mime_type, error = decode_base64_image(request.file_data)
        if error:
            logger.error(f"解析 base64 数据时出错: {error}")
            raise HTTPException(status_code=400, detail=f"无效的 base64 data URI 格式: {error}")

        file_extension = _guess_extension(request.file_name, mime_type)

        if compress_uploads and file_extension.lower() in IMAGE_EXTENSIONS:
            original_size = len(file_data)
            compressed = compress_with_preset(file_data, upload_preset)
            if isinstance(compressed, str):
                optimized_data, _, decode_error = decode_base64_image(compressed)
                if not decode_error:
                    logger.info(
                        f"图片优化: {original_size/1024:.2f}KB → {len(optimized_data)/1024:.2f}KB "
                        f"({(1 - len(optimized_data)/max(original_size, 1))*100:.1f}% 压缩)"
                    )
                    file_data = optimized_data
                    file_extension = '.jpg'

        unique_filename = f"{uuid.uuid4()}{file_extension}"
        file_path = os.path.join(upload_dir, unique_filename)
        try:
            with open(file_path, "wb") as f:
                f.write(file_data)
        except OSError as e:
            logger.error(f"保存文件失败: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"内部服务器错误: {e}")

        logger.info(f"文件 '{request.file_name}' 已成功保存为 '{unique_filename}'。")
        return JSONResponse(
            status_code=200,
            content={"success": True, "filename": unique_filename}
        )

    @app.get("/")
    def read_root():
        return {"message": "报告图床服务器正在运行。"}

    return app


if __name__ == "__main__":
    import uvicorn

    load_config()
    setup_logging(CONFIG.get("log_level"))
    port = int(os.environ.get("FILE_BED_PORT", "5180"))
    logger.info("🚀 图床服务器正在启动...")
    logger.info(f"   - 上传端点: http://0.0.0.0:{port}/upload")
    logger.info("   - 文件访问路径: /uploads")
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
