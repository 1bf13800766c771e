"""
文档存储模块
通用的集合/文档存储，createdAt/updatedAt 由存储端写入
"""
import asyncio
import copy
import json
import logging
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = ("createdAt", "updatedAt")
_COLUMN_FOR_FIELD = {"createdAt": "created_at", "updatedAt": "updated_at"}


class PersistenceError(Exception):
    """存储不可用或读写失败"""


class DocumentNotFound(PersistenceError):
    """要更新的文档不存在"""


def _new_document_id() -> str:
    return uuid.uuid4().hex[:20]


def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _strip_managed_fields(doc: dict) -> dict:
    body = {k: v for k, v in doc.items() if k not in TIMESTAMP_FIELDS and k != "id"}
    return body


class DocumentStore(ABC):
    """文档存储接口（全部为协程）"""

    @abstractmethod
    async def create(self, collection: str, doc: dict) -> str:
        pass

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, partial_doc: dict) -> None:
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        pass

    @abstractmethod
    async def query_all(self, collection: str, order_by: str = "createdAt", desc: bool = True) -> List[dict]:
        pass

    async def close(self) -> None:
        return None


def _sort_documents(docs: List[dict], order_by: str, desc: bool) -> List[dict]:
    def sort_key(doc):
        value = doc.get(order_by)
        # 缺少排序字段的文档排在最后
        return (value is not None, value if value is not None else "")
    return sorted(docs, key=sort_key, reverse=desc)


class MemoryDocumentStore(DocumentStore):
    """进程内实现（测试、开发环境使用）"""

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._lock = Lock()

    def _materialize(self, doc_id: str, record: dict) -> dict:
        doc = copy.deepcopy(record["body"])
        doc["id"] = doc_id
        doc["createdAt"] = _to_datetime(record["created_at"])
        doc["updatedAt"] = _to_datetime(record["updated_at"])
        return doc

    async def create(self, collection: str, doc: dict) -> str:
        doc_id = _new_document_id()
        now = time.time()
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = {
                "body": copy.deepcopy(_strip_managed_fields(doc)),
                "created_at": now,
                "updated_at": now,
            }
        return doc_id

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        record = self._collections.get(collection, {}).get(doc_id)
        if record is None:
            return None
        return self._materialize(doc_id, record)

    async def update(self, collection: str, doc_id: str, partial_doc: dict) -> None:
        with self._lock:
            record = self._collections.get(collection, {}).get(doc_id)
            if record is None:
                raise DocumentNotFound(f"文档不存在: {collection}/{doc_id}")
            record["body"].update(copy.deepcopy(_strip_managed_fields(partial_doc)))
            record["updated_at"] = time.time()

    async def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)

    async def query_all(self, collection: str, order_by: str = "createdAt", desc: bool = True) -> List[dict]:
        docs = [self._materialize(doc_id, record) for doc_id, record in self._collections.get(collection, {}).items()]
        return _sort_documents(docs, order_by, desc)

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))


class SQLiteDocumentStore(DocumentStore):
    """SQLite 文档存储，文档正文以 JSON 保存"""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self._init_database()

    def _get_connection(self):
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._get_connection()
            try:
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL,
                        PRIMARY KEY (collection, id)
                    )
                ''')
                conn.execute('CREATE INDEX IF NOT EXISTS idx_documents_created ON documents(collection, created_at)')
                conn.commit()
            finally:
                conn.close()
            logger.info(f"✅ SQLite文档库已初始化: {self.db_path}")
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"初始化SQLite文档库失败: {e}") from e

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite操作失败: {e}") from e

    @staticmethod
    def _row_to_doc(row) -> dict:
        doc_id, body, created_at, updated_at = row
        doc = json.loads(body)
        doc["id"] = doc_id
        doc["createdAt"] = _to_datetime(created_at)
        doc["updatedAt"] = _to_datetime(updated_at)
        return doc

    def _create_sync(self, collection: str, doc: dict) -> str:
        doc_id = _new_document_id()
        now = time.time()
        body = json.dumps(_strip_managed_fields(doc), ensure_ascii=False)
        conn = self._get_connection()
        try:
            conn.execute(
                'INSERT INTO documents (collection, id, body, created_at, updated_at) VALUES (?, ?, ?, ?, ?)',
                (collection, doc_id, body, now, now)
            )
            conn.commit()
        finally:
            conn.close()
        return doc_id

    def _get_sync(self, collection: str, doc_id: str) -> Optional[dict]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                'SELECT id, body, created_at, updated_at FROM documents WHERE collection = ? AND id = ?',
                (collection, doc_id)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_doc(row) if row else None

    def _update_sync(self, collection: str, doc_id: str, partial_doc: dict) -> None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                'SELECT body FROM documents WHERE collection = ? AND id = ?',
                (collection, doc_id)
            ).fetchone()
            if row is None:
                raise DocumentNotFound(f"文档不存在: {collection}/{doc_id}")
            body = json.loads(row[0])
            body.update(_strip_managed_fields(partial_doc))
            conn.execute(
                'UPDATE documents SET body = ?, updated_at = ? WHERE collection = ? AND id = ?',
                (json.dumps(body, ensure_ascii=False), time.time(), collection, doc_id)
            )
            conn.commit()
        finally:
            conn.close()

    def _delete_sync(self, collection: str, doc_id: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute('DELETE FROM documents WHERE collection = ? AND id = ?', (collection, doc_id))
            conn.commit()
        finally:
            conn.close()

    def _query_all_sync(self, collection: str, order_by: str, desc: bool) -> List[dict]:
        column = _COLUMN_FOR_FIELD.get(order_by)
        conn = self._get_connection()
        try:
            if column:
                rows = conn.execute(
                    f'SELECT id, body, created_at, updated_at FROM documents WHERE collection = ? '
                    f'ORDER BY {column} {"DESC" if desc else "ASC"}',
                    (collection,)
                ).fetchall()
            else:
                rows = conn.execute(
                    'SELECT id, body, created_at, updated_at FROM documents WHERE collection = ?',
                    (collection,)
                ).fetchall()
        finally:
            conn.close()

        docs = [self._row_to_doc(row) for row in rows]
        if column:
            return docs
        return _sort_documents(docs, order_by, desc)

    async def create(self, collection: str, doc: dict) -> str:
        return await self._run(self._create_sync, collection, doc)

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return await self._run(self._get_sync, collection, doc_id)

    async def update(self, collection: str, doc_id: str, partial_doc: dict) -> None:
        await self._run(self._update_sync, collection, doc_id, partial_doc)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._run(self._delete_sync, collection, doc_id)

    async def query_all(self, collection: str, order_by: str = "createdAt", desc: bool = True) -> List[dict]:
        return await self._run(self._query_all_sync, collection, order_by, desc)


def create_document_store(config: dict) -> DocumentStore:
    """根据 storage 配置创建文档存储（启动时选定唯一的权威实现）"""
    backend = config.get("backend", "sqlite")
    if backend == "memory":
        return MemoryDocumentStore()
    if backend == "sqlite":
        return SQLiteDocumentStore(config.get("sqlite_path", "./data/reports.db"))
    raise ValueError(f"未知的存储后端: {backend}")
