"""
旧版图片数据库客户端
早期的报告把压缩后的图片存在 Realtime Database 的 images 集合里，文档中只保存 rtdb://<key>。
新版本不再写入，只为兼容旧数据而读取。
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


class LegacyStoreError(Exception):
    """旧版数据库请求失败"""


class LegacyImageStore(ABC):
    """旧版键值库接口"""

    @abstractmethod
    async def read(self, collection: str, key: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def write(self, collection: str, payload: str) -> str:
        pass


class RealtimeDbImageStore(LegacyImageStore):
    """通过 REST 接口访问 Realtime Database"""

    def __init__(self, session: aiohttp.ClientSession, database_url: str, auth_token: Optional[str] = None):
        self.session = session
        self.database_url = database_url.rstrip('/')
        self.auth_token = auth_token

    def _url(self, path: str) -> str:
        return f"{self.database_url}/{path}.json"

    def _params(self) -> dict:
        return {"auth": self.auth_token} if self.auth_token else {}

    async def read(self, collection: str, key: str) -> Optional[dict]:
        """读取一条记录，不存在时返回 None"""
        url = self._url(f"{collection}/{key}")
        try:
            async with self.session.get(url, params=self._params()) as response:
                if response.status != 200:
                    raise LegacyStoreError(f"HTTP {response.status}")
                record = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise LegacyStoreError(f"网络错误: {e}") from e

        if not isinstance(record, dict):
            return None
        return record

    async def write(self, collection: str, payload: str) -> str:
        """写入一条记录，返回数据库生成的键"""
        record = {
            "data": payload,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "size": len(payload),
        }
        url = self._url(collection)
        try:
            async with self.session.post(url, json=record, params=self._params()) as response:
                if response.status != 200:
                    raise LegacyStoreError(f"HTTP {response.status}")
                body = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise LegacyStoreError(f"网络错误: {e}") from e

        key = (body or {}).get("name")
        if not key:
            raise LegacyStoreError("响应中缺少生成的键")
        logger.info(f"[LEGACY] 图片已写入旧版数据库, key: {key}")
        return key
