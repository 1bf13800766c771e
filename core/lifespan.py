import asyncio
from contextlib import asynccontextmanager

import aiohttp

from core.logging_config import logger, setup_logging
from core import global_state as gs
from core.config_loader import CONFIG, CONFIG_FILE_MTIMES, get_section, load_config
from background_tasks.monitors import config_monitor
from modules.document_store import create_document_store
from modules.file_uploader import FileBedBlobStore
from modules.image_cache import LocalImageCache
from modules.kv_store import create_kv_store
from modules.legacy_store import RealtimeDbImageStore
from services.image_service import ImageResolutionService, LegacyImageResolver
from services.report_service import ReportService


def create_http_session() -> aiohttp.ClientSession:
    """按 connection_pool / download_timeout 配置创建共享会话"""
    pool_config = get_section("connection_pool")
    connector = aiohttp.TCPConnector(
        limit=pool_config.get("total_limit", 100),
        limit_per_host=pool_config.get("per_host_limit", 30),
        ttl_dns_cache=pool_config.get("dns_cache_ttl", 300),
        enable_cleanup_closed=True,
        keepalive_timeout=pool_config.get("keepalive_timeout", 30),
    )
    timeout_config = get_section("download_timeout")
    timeout = aiohttp.ClientTimeout(
        total=timeout_config.get("total", 30),
        connect=timeout_config.get("connect", 5),
        sock_read=timeout_config.get("sock_read", 10),
    )
    return aiohttp.ClientSession(connector=connector, timeout=timeout, trust_env=True)


def build_services(session: aiohttp.ClientSession) -> None:
    """根据当前配置创建存储和服务对象，写入 global_state"""
    gs.document_store = create_document_store(get_section("storage"))
    gs.local_store = create_kv_store(get_section("local_cache"))
    gs.image_cache = LocalImageCache(gs.local_store)

    legacy_config = get_section("legacy_store")
    legacy_store = None
    if legacy_config.get("enabled") and legacy_config.get("database_url"):
        legacy_store = RealtimeDbImageStore(
            session,
            legacy_config["database_url"],
            legacy_config.get("auth_token"),
        )
    resolver = LegacyImageResolver(
        legacy_store,
        collection=legacy_config.get("collection", "images"),
        default_timeout_ms=legacy_config.get("fetch_timeout_ms", 10000),
    )
    gs.resolution_service = ImageResolutionService(
        resolver,
        gs.image_cache,
        batch_timeout_ms=get_section("image_resolution").get("batch_timeout_ms", 5000),
    )

    gs.blob_store = None
    if CONFIG.get("file_bed_enabled") and CONFIG.get("file_bed_endpoints"):
        gs.blob_store = FileBedBlobStore(
            session,
            CONFIG["file_bed_endpoints"],
            strategy=CONFIG.get("file_bed_selection_strategy", "failover"),
            recovery_seconds=CONFIG.get("file_bed_recovery_seconds", 300),
        )

    gs.report_service = ReportService(
        gs.document_store,
        local_store=gs.local_store,
        collection=get_section("storage").get("collection", "laporan"),
    )


@asynccontextmanager
async def lifespan(app):
    """
    在服务器启动时运行的生命周期函数。
    负责初始化 aiohttp_session、存储、缓存和服务对象，并启动配置监控任务
    """
    gs.main_event_loop = asyncio.get_running_loop()

    load_config()
    setup_logging(CONFIG.get("log_level"))

    gs.aiohttp_session = create_http_session()
    build_services(gs.aiohttp_session)

    logger.info("=" * 60)
    logger.info("报告服务已初始化")
    logger.info(f"  - 文档存储: {type(gs.document_store).__name__}")
    logger.info(f"  - 本地缓存: {type(gs.local_store).__name__}")
    logger.info(f"  - 图床: {'✅ 启用' if gs.blob_store else '❌ 禁用（图片内联保存）'}")
    logger.info("=" * 60)

    gs.background_tasks = [
        asyncio.create_task(config_monitor(CONFIG_FILE_MTIMES, load_config)),
    ]

    yield

    for task in gs.background_tasks:
        task.cancel()
    gs.background_tasks = []

    try:
        if gs.document_store:
            await gs.document_store.close()
    finally:
        gs.document_store = None

    try:
        if gs.aiohttp_session:
            await gs.aiohttp_session.close()
            logger.info("全局aiohttp会话已关闭")
    finally:
        gs.aiohttp_session = None

    logger.info("服务器正在关闭。")
