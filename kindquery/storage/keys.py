"""
键模块 - 层级记录标识与短二进制包装
"""

import base64
import binascii
import json
from dataclasses import dataclass
from functools import total_ordering
from typing import Any, List, Optional, Tuple, Union

KEY_RESERVED_PROPERTY = "__key__"


@total_ordering
@dataclass(frozen=True)
class Key:
    """
    记录标识 - 由种类名、数字 ID 或字符串名以及可选的父键组成
    """
    kind: str
    id_or_name: Union[int, str, None] = None
    parent: Optional["Key"] = None

    def __post_init__(self):
        if not self.kind:
            raise ValueError("Key 必须带有种类名")
        if self.id_or_name is not None and not isinstance(self.id_or_name, (int, str)):
            raise ValueError(f"非法的 ID 或名称: {self.id_or_name!r}")

    @classmethod
    def from_path(cls, *path_elements: Any) -> "Key":
        """
        根据 (kind, id_or_name) 序列构建键

        Args:
            path_elements: 交替出现的种类名与 ID/名称，从根开始
        """
        if not path_elements or len(path_elements) % 2:
            raise ValueError("路径必须由成对的种类名与 ID/名称组成")
        key = None
        for i in range(0, len(path_elements), 2):
            key = cls(path_elements[i], path_elements[i + 1], key)
        return key

    @property
    def id(self) -> Optional[int]:
        return self.id_or_name if isinstance(self.id_or_name, int) else None

    @property
    def name(self) -> Optional[str]:
        return self.id_or_name if isinstance(self.id_or_name, str) else None

    @property
    def root(self) -> "Key":
        key = self
        while key.parent is not None:
            key = key.parent
        return key

    def path(self) -> List[Tuple[str, Union[int, str, None]]]:
        """返回从根到自身的路径"""
        elements = []
        key = self
        while key is not None:
            elements.append((key.kind, key.id_or_name))
            key = key.parent
        elements.reverse()
        return elements

    def is_ancestor_of(self, other: "Key") -> bool:
        """自身等于 other 或为其祖先时返回 True"""
        key = other
        while key is not None:
            if key == self:
                return True
            key = key.parent
        return False

    def _sort_key(self):
        # 数字 ID 排在字符串名之前
        return tuple(
            (kind, 0, value, "") if isinstance(value, int) else (kind, 1, 0, value or "")
            for kind, value in self.path()
        )

    def __lt__(self, other):
        if not isinstance(other, Key):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __str__(self) -> str:
        return "/".join(f"{kind}({value!r})" for kind, value in self.path())


@total_ordering
@dataclass(frozen=True)
class ShortBlob:
    """短二进制值，可被索引与过滤"""
    value: bytes

    def __lt__(self, other):
        if not isinstance(other, ShortBlob):
            return NotImplemented
        return self.value < other.value


def key_to_string(key: Key) -> str:
    """将键编码为 URL 安全的字符串"""
    raw = json.dumps([[kind, value] for kind, value in key.path()], separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def string_to_key(encoded: str) -> Key:
    """
    解码 key_to_string 生成的字符串

    Raises:
        ValueError: 字符串不是合法的编码键
    """
    if not isinstance(encoded, str) or not encoded:
        raise ValueError(f"无法解码键: {encoded!r}")
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        path = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValueError(f"无法解码键: {encoded!r}") from e

    if not isinstance(path, list) or not path:
        raise ValueError(f"无法解码键: {encoded!r}")
    key = None
    for element in path:
        if (not isinstance(element, list) or len(element) != 2
                or not isinstance(element[0], str)
                or isinstance(element[1], bool)
                or not isinstance(element[1], (int, str, type(None)))):
            raise ValueError(f"无法解码键: {encoded!r}")
        key = Key(element[0], element[1], key)
    return key
