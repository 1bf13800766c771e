"""
本地图片缓存
缓存旧版数据库解析出的图片，避免重复拉取；写满时淘汰最旧的一半后重试一次
"""
import logging
import math
from typing import Optional

from modules.image_refs import legacy_key_of
from modules.kv_store import KeyValueStore, StorageQuotaExceeded

logger = logging.getLogger(__name__)

IMAGE_CACHE_PREFIX = "report_img_"


class LocalImageCache:
    """基于本地键值存储的图片缓存（尽力而为，写失败不影响调用方）"""

    def __init__(self, store: KeyValueStore, prefix: str = IMAGE_CACHE_PREFIX):
        self.store = store
        self.prefix = prefix

    def _cache_key(self, key: str) -> str:
        # rtdb://xxx 与 xxx 映射到同一个缓存键
        return self.prefix + legacy_key_of(key)

    def _cached_keys(self):
        return [k for k in self.store.keys() if k.startswith(self.prefix)]

    def get(self, key: str) -> Optional[str]:
        try:
            cached = self.store.get_item(self._cache_key(key))
        except Exception as e:
            logger.warning(f"[IMG_CACHE] 读取缓存失败 ({key}): {e}")
            return None
        if cached:
            logger.debug(f"[IMG_CACHE] ⚡ 命中缓存: {key}")
            return cached
        return None

    def put(self, key: str, payload: str) -> None:
        cache_key = self._cache_key(key)
        try:
            self.store.set_item(cache_key, payload)
            logger.debug(f"[IMG_CACHE] 💾 已缓存: {key}")
            return
        except StorageQuotaExceeded as e:
            logger.warning(f"[IMG_CACHE] 缓存已满，清理最旧的一半后重试: {e}")
        except Exception as e:
            logger.warning(f"[IMG_CACHE] 写入缓存失败 ({key}): {e}")
            return

        self.evict_oldest_half()
        try:
            self.store.set_item(cache_key, payload)
        except Exception as e:
            logger.warning(f"[IMG_CACHE] 清理后仍无法缓存 ({key}): {e}")

    def evict_oldest_half(self) -> int:
        """按插入顺序删除最旧的一半缓存条目（向上取整），返回删除数量"""
        try:
            keys = self._cached_keys()
            remove_count = math.ceil(len(keys) / 2)
            for key in keys[:remove_count]:
                self.store.remove_item(key)
        except Exception as e:
            logger.warning(f"[IMG_CACHE] 清理旧缓存失败: {e}")
            return 0
        logger.info(f"[IMG_CACHE] 🧹 已清理 {remove_count} 个旧缓存图片")
        return remove_count

    def clear(self) -> int:
        """删除全部图片缓存，返回删除数量"""
        keys = self._cached_keys()
        for key in keys:
            self.store.remove_item(key)
        logger.info(f"[IMG_CACHE] 已清空全部 {len(keys)} 个缓存图片")
        return len(keys)

    def __len__(self) -> int:
        return len(self._cached_keys())
