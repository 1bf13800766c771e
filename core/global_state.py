"""
进程级对象
全部在 lifespan 中显式创建，路由通过依赖注入获取，不在导入时初始化
"""
from typing import Optional

import aiohttp

from modules.document_store import DocumentStore
from modules.file_uploader import BlobStore
from modules.image_cache import LocalImageCache
from modules.kv_store import KeyValueStore
from services.image_service import ImageResolutionService
from services.report_service import ReportService

main_event_loop = None

# 全局aiohttp会话（在lifespan里初始化）
aiohttp_session: Optional[aiohttp.ClientSession] = None

document_store: Optional[DocumentStore] = None
local_store: Optional[KeyValueStore] = None
image_cache: Optional[LocalImageCache] = None
blob_store: Optional[BlobStore] = None

resolution_service: Optional[ImageResolutionService] = None
report_service: Optional[ReportService] = None

# 后台任务句柄
background_tasks: list = []
