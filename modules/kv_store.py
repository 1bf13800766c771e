"""
本地持久化键值存储
相当于浏览器 localStorage：字符串键值、有容量上限、容量不足时抛出专门的异常
"""
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from threading import Lock, RLock
from typing import List, Optional

logger = logging.getLogger(__name__)


class StorageQuotaExceeded(Exception):
    """写入会超出存储配额"""


def _entry_size(key: str, value: str) -> int:
    return len(key) + len(value)


class KeyValueStore(ABC):
    """键值存储接口"""

    quota_bytes: Optional[int] = None

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove_item(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """按插入顺序返回所有键"""
        pass

    @abstractmethod
    def used_bytes(self) -> int:
        pass

    def _check_quota(self, key: str, value: str, existing: Optional[str]):
        if self.quota_bytes is None:
            return
        current = self.used_bytes()
        if existing is not None:
            current -= _entry_size(key, existing)
        needed = current + _entry_size(key, value)
        if needed > self.quota_bytes:
            raise StorageQuotaExceeded(
                f"写入 '{key}' 需要 {needed} 字节，超出配额 {self.quota_bytes} 字节"
            )


class MemoryKeyValueStore(KeyValueStore):
    """进程内实现（测试、开发环境使用）"""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: "OrderedDict[str, str]" = OrderedDict()
        # 缓存读写会在线程池中并发执行；set_item 持锁时还会调用 used_bytes
        self._lock = RLock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._check_quota(key, value, self._data.get(key))
            self._data[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def used_bytes(self) -> int:
        with self._lock:
            return sum(_entry_size(k, v) for k, v in self._data.items())


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite 实现，重启后数据仍然保留"""

    def __init__(self, db_path, quota_bytes: Optional[int] = None):
        self.db_path = Path(db_path)
        self.quota_bytes = quota_bytes
        self._lock = Lock()
        self._init_database()

    def _get_connection(self):
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        try:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS kv_items (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT UNIQUE NOT NULL,
                    value TEXT NOT NULL
                )
            ''')
            conn.commit()
        finally:
            conn.close()
        logger.info(f"✅ 本地键值存储已初始化: {self.db_path}")

    def get_item(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        try:
            row = conn.execute('SELECT value FROM kv_items WHERE key = ?', (key,)).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._check_quota(key, value, self.get_item(key))
            conn = self._get_connection()
            try:
                # 覆盖写入保留原插入顺序
                conn.execute(
                    'INSERT INTO kv_items (key, value) VALUES (?, ?) '
                    'ON CONFLICT(key) DO UPDATE SET value = excluded.value',
                    (key, value)
                )
                conn.commit()
            finally:
                conn.close()

    def remove_item(self, key: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute('DELETE FROM kv_items WHERE key = ?', (key,))
                conn.commit()
            finally:
                conn.close()

    def keys(self) -> List[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute('SELECT key FROM kv_items ORDER BY seq').fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]

    def used_bytes(self) -> int:
        conn = self._get_connection()
        try:
            row = conn.execute(
                'SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv_items'
            ).fetchone()
        finally:
            conn.close()
        return int(row[0])


def create_kv_store(config: dict) -> KeyValueStore:
    """根据 local_cache 配置创建键值存储（启动时选定，运行期不切换）"""
    quota_kb = config.get("quota_kb")
    quota_bytes = int(quota_kb * 1024) if quota_kb else None
    backend = config.get("backend", "sqlite")
    if backend == "memory":
        return MemoryKeyValueStore(quota_bytes=quota_bytes)
    if backend == "sqlite":
        return SQLiteKeyValueStore(config.get("sqlite_path", "./data/local_cache.db"), quota_bytes=quota_bytes)
    raise ValueError(f"未知的本地缓存后端: {backend}")
