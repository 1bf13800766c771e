"""
图床上传模块
把图片以 base64 Data URI 的形式上传到图床服务（file_bed_server），返回可访问的URL
"""
import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import aiohttp

from modules.image_processor import image_to_base64

logger = logging.getLogger(__name__)


class BlobUploadError(Exception):
    """所有图床端点均上传失败"""


def _public_url(endpoint: dict, filename: str) -> str:
    base = endpoint.get("public_base_url")
    if not base:
        upload_url = endpoint["url"].rstrip('/')
        base = upload_url[:-len('/upload')] if upload_url.endswith('/upload') else upload_url
    return f"{base.rstrip('/')}/uploads/{filename}"


async def upload_to_file_bed(
    session: aiohttp.ClientSession,
    file_name: str,
    file_data: str,
    endpoint: dict,
    timeout_seconds: float = 30
) -> Tuple[Optional[str], Optional[str]]:
    """
    上传到单个图床端点

    Args:
        session: 共享的 aiohttp 会话
        file_name: 文件名（图床据此决定扩展名）
        file_data: 完整的 base64 Data URI
        endpoint: 端点配置 {"name", "url", "api_key", "public_base_url"}

    Returns:
        (URL, 错误信息)
    """
    payload = {
        "file_name": file_name,
        "file_data": file_data,
        "api_key": endpoint.get("api_key"),
    }
    try:
        async with session.post(
            endpoint["url"],
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout_seconds)
        ) as response:
            if response.status != 200:
                text = await response.text()
                return None, f"HTTP {response.status}: {text[:200]}"
            body = await response.json(content_type=None)
    except aiohttp.ClientError as e:
        return None, f"网络错误: {type(e).__name__}: {e}"
    except asyncio.TimeoutError:
        return None, f"上传超时（{timeout_seconds}秒）"

    if not body or not body.get("success"):
        return None, f"图床返回失败: {body}"
    if body.get("url"):
        return body["url"], None
    if body.get("filename"):
        return _public_url(endpoint, body["filename"]), None
    return None, "图床响应中缺少文件名"


class BlobStore(ABC):
    """图床接口"""

    @abstractmethod
    async def upload(self, data: bytes, path: str, mime_type: str = 'image/jpeg') -> str:
        pass


class FileBedBlobStore(BlobStore):
    """多端点图床，失败的端点暂时禁用，超过恢复时间后自动恢复"""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        endpoints: List[dict],
        strategy: str = "failover",
        recovery_seconds: int = 300
    ):
        self.session = session
        self.endpoints = endpoints
        self.strategy = strategy
        self.recovery_seconds = recovery_seconds
        self.disabled_endpoints: Dict[str, float] = {}
        self.round_robin_index = 0

    def _recover_endpoints(self):
        now = time.time()
        for name, disable_time in list(self.disabled_endpoints.items()):
            if now - disable_time > self.recovery_seconds:
                del self.disabled_endpoints[name]
                logger.info(f"[FILE_BED] 图床端点 '{name}' 已自动恢复")

    def _endpoints_to_try(self) -> List[dict]:
        self._recover_endpoints()
        active = [
            ep for ep in self.endpoints
            if ep.get("enabled", True) and ep.get("name") not in self.disabled_endpoints
        ]
        if not active:
            return []
        if self.strategy == "random":
            return random.sample(active, len(active))
        start_index = self.round_robin_index % len(active)
        if self.strategy == "round_robin":
            self.round_robin_index += 1
        return active[start_index:] + active[:start_index]

    async def upload(self, data: bytes, path: str, mime_type: str = 'image/jpeg') -> str:
        endpoints = self._endpoints_to_try()
        if not endpoints:
            raise BlobUploadError("没有可用的图床端点")

        file_data = image_to_base64(data, mime_type)
        last_error = None
        for i, endpoint in enumerate(endpoints):
            name = endpoint.get("name", "Unknown")
            url, error = await upload_to_file_bed(self.session, path, file_data, endpoint)
            if not error:
                logger.info(f"[FILE_BED] 上传成功到 '{name}': {url[:100]}")
                return url

            logger.warning(f"[FILE_BED] 上传失败到 '{name}': {error}")
            self.disabled_endpoints[name] = time.time()
            last_error = error
            if self.strategy == "failover" and i == 0:
                self.round_robin_index += 1

        raise BlobUploadError(f"所有图床端点均上传失败。最后错误: {last_error}")
