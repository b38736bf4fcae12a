"""
元数据模块 - 管理领域类到存储种类与属性名的映射
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Sequence
from loguru import logger

from .exceptions import QueryValidationError


@dataclass
class MemberMetadata:
    """成员元数据"""
    name: str
    declared_type: Any = None
    primary_key: bool = False

    # 指向父记录的键（祖先指针）
    parent_pk: bool = False

    # 显式指定的存储属性名
    column: Optional[str] = None

    # 嵌入对象的成员，非嵌入成员为 None
    embedded: Optional[Dict[str, "MemberMetadata"]] = None

    # 关系成员指向的领域类
    related_class: Optional[type] = None

    # 关系成员是否由本记录的父键提供（子侧）
    parent_key_provider: bool = False

    # 主键以编码字符串形式暴露
    encoded_key: bool = False

    @property
    def is_embedded(self) -> bool:
        return self.embedded is not None

    @property
    def is_relation(self) -> bool:
        return self.related_class is not None


@dataclass
class ClassMetadata:
    """类元数据"""
    cls: type
    kind: str
    members: Dict[str, MemberMetadata] = field(default_factory=dict)

    @property
    def full_class_name(self) -> str:
        return f"{self.cls.__module__}.{self.cls.__qualname__}"

    @property
    def primary_key_member(self) -> Optional[MemberMetadata]:
        for member in self.members.values():
            if member.primary_key:
                return member
        return None

    @property
    def parent_pk_member(self) -> Optional[MemberMetadata]:
        for member in self.members.values():
            if member.parent_pk:
                return member
        return None


class MetadataRegistry:
    """
    元数据注册表 - 提供 member_for / kind_name_for 查询
    """

    def __init__(self):
        """初始化元数据注册表"""
        # 索引
        self.class_index: Dict[type, ClassMetadata] = {}

        logger.info("元数据注册表初始化完成")

    def register(self, cls: type, members: Sequence[MemberMetadata],
                 kind: Optional[str] = None) -> ClassMetadata:
        """
        注册领域类

        Args:
            cls: 领域类
            members: 成员元数据
            kind: 存储种类名，默认为类名

        Returns:
            注册后的类元数据
        """
        acmd = ClassMetadata(cls, kind or cls.__name__, {m.name: m for m in members})
        if sum(1 for m in acmd.members.values() if m.primary_key) != 1:
            raise QueryValidationError(f"类 {acmd.full_class_name} 必须有且仅有一个主键成员")

        self.class_index[cls] = acmd
        logger.debug(f"注册领域类: {acmd.full_class_name} -> {acmd.kind}")
        return acmd

    def register_dataclass(self, cls: type, kind: Optional[str] = None) -> ClassMetadata:
        """
        从数据类字段的 metadata 注册领域类

        支持的 metadata 键: primary_key, parent_pk, column, embedded,
        related, parent_key_provider, encoded_key
        """
        return self.register(cls, self._members_of(cls), kind)

    def _members_of(self, cls: type) -> List[MemberMetadata]:
        members = []
        for f in dataclasses.fields(cls):
            meta = f.metadata
            embedded = None
            if meta.get("embedded"):
                embedded = {m.name: m for m in self._members_of(f.type)}
            members.append(MemberMetadata(
                name=f.name,
                declared_type=meta.get("type", f.type),
                primary_key=meta.get("primary_key", False),
                parent_pk=meta.get("parent_pk", False),
                column=meta.get("column"),
                embedded=embedded,
                related_class=meta.get("related"),
                parent_key_provider=meta.get("parent_key_provider", False),
                encoded_key=meta.get("encoded_key", False),
            ))
        return members

    def get(self, cls: type) -> Optional[ClassMetadata]:
        """获取类元数据，未注册时返回 None"""
        return self.class_index.get(cls)

    def kind_name_for(self, cls: type) -> str:
        acmd = self.get(cls)
        if acmd is None:
            raise QueryValidationError(f"No meta data for {cls!r}")
        return acmd.kind

    def member_for(self, acmd: ClassMetadata, path: Sequence[str],
                   query_text: Optional[str] = None) -> Optional[MemberMetadata]:
        """
        按字段路径解析成员

        多段路径只能穿过嵌入成员。

        Returns:
            成员元数据，首段或嵌入成员不存在时返回 None
        """
        member = acmd.members.get(path[0])
        if member is None or len(path) == 1:
            return member

        for name in path[1:]:
            if member is None:
                return None
            if not member.is_embedded:
                raise QueryValidationError(
                    f"{query_text}: Can only filter by properties of a sub-object if "
                    "the sub-object is embedded.", query_text)
            member = member.embedded.get(name)
        return member

    @staticmethod
    def property_name_for(member: MemberMetadata) -> str:
        """存储属性名：显式覆盖，否则为成员名"""
        return member.column or member.name
