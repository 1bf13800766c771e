"""
图片引用分类模块
根据字符串前缀判断图片引用所在的存储层级（内联 / 远程URL / 旧版数据库 / 空）
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

INLINE_PREFIX = "data:"
LEGACY_SCHEME = "rtdb://"


class ImageRefKind(str, Enum):
    EMPTY = "empty"
    INLINE = "inline"
    REMOTE = "remote"
    LEGACY = "legacy"


@dataclass(frozen=True)
class ImageRef:
    """已分类的图片引用"""
    kind: ImageRefKind
    raw: str

    @property
    def is_renderable(self) -> bool:
        """无需再解析即可直接作为 src 使用"""
        return self.kind in (ImageRefKind.INLINE, ImageRefKind.REMOTE)

    @property
    def legacy_key(self) -> Optional[str]:
        if self.kind is not ImageRefKind.LEGACY:
            return None
        return self.raw[len(LEGACY_SCHEME):]


def classify(value) -> ImageRef:
    """纯前缀判断，不做I/O，不抛异常。

    未识别的非空字符串一律视为远程URL（直接透传）。
    """
    if not isinstance(value, str) or not value.strip():
        return ImageRef(ImageRefKind.EMPTY, value if isinstance(value, str) else "")

    if value.startswith(INLINE_PREFIX):
        return ImageRef(ImageRefKind.INLINE, value)

    if value.startswith(LEGACY_SCHEME):
        if not value[len(LEGACY_SCHEME):].strip():
            return ImageRef(ImageRefKind.EMPTY, value)
        return ImageRef(ImageRefKind.LEGACY, value)

    return ImageRef(ImageRefKind.REMOTE, value)


def classify_all(values: Iterable) -> List[ImageRef]:
    return [classify(v) for v in values or []]


def legacy_key_of(value: str) -> str:
    """去掉旧版 scheme 前缀，缓存与旧版库使用同一个逻辑键"""
    if value.startswith(LEGACY_SCHEME):
        return value[len(LEGACY_SCHEME):]
    return value

