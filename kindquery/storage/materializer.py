"""
物化模块 - 存储记录与领域对象之间的转换，带身份缓存
"""

from decimal import Decimal
from enum import Enum
from typing import Dict, List, Any, Optional, Sequence, Set, Tuple

from loguru import logger

from .datastore import Datastore, Entity
from .keys import Key, ShortBlob, key_to_string, string_to_key
from ..core.exceptions import QueryValidationError
from ..core.metadata import ClassMetadata, MemberMetadata, MetadataRegistry


def datastore_value(value: Any) -> Any:
    """领域值转换为存储可保存、可过滤的值"""
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, (bytes, bytearray)):
        return ShortBlob(bytes(value))
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [datastore_value(v) for v in value]
    return value


class IdentityCache:
    """身份缓存 - 同一个键在缓存有效期内只对应一个对象"""

    def __init__(self):
        self._objects: Dict[Key, Any] = {}

        # 只加载了身份字段的对象
        self._hollow: Set[Key] = set()

    def get(self, key: Key) -> Optional[Any]:
        return self._objects.get(key)

    def put(self, key: Key, obj: Any, hollow: bool = False):
        self._objects[key] = obj
        if hollow:
            self._hollow.add(key)
        else:
            self._hollow.discard(key)

    def is_hollow(self, key: Key) -> bool:
        return key in self._hollow

    def evict(self, key: Key):
        self._objects.pop(key, None)
        self._hollow.discard(key)

    def clear(self):
        self._objects.clear()
        self._hollow.clear()

    def __contains__(self, key: Key) -> bool:
        return key in self._objects

    def __len__(self) -> int:
        return len(self._objects)


class EntityMaterializer:
    """
    记录物化器

    提供整对象、仅身份对象与投影三种物化方式，以及写入时的反向转换。
    """

    def __init__(self, metadata: MetadataRegistry, cache: Optional[IdentityCache] = None):
        """
        初始化物化器

        Args:
            metadata: 元数据注册表
            cache: 身份缓存
        """
        self.metadata = metadata
        self.cache = cache if cache is not None else IdentityCache()

        logger.info("记录物化器初始化完成")

    def _class_metadata(self, cls_or_acmd) -> ClassMetadata:
        if isinstance(cls_or_acmd, ClassMetadata):
            return cls_or_acmd
        acmd = self.metadata.get(cls_or_acmd)
        if acmd is None:
            raise QueryValidationError(f"No meta data for {cls_or_acmd!r}")
        return acmd

    def build_whole(self, entity: Entity, cls_or_acmd, ignore_cache: bool = False) -> Any:
        """
        物化完整对象

        命中身份缓存时直接返回缓存中的对象；缓存中只有身份字段的对象会被
        就地补全，保持同一个键只对应一个对象。
        """
        acmd = self._class_metadata(cls_or_acmd)
        obj = None
        if not ignore_cache:
            cached = self.cache.get(entity.key)
            if cached is not None and not self.cache.is_hollow(entity.key):
                return cached
            obj = cached

        if obj is None:
            obj = _new_instance(acmd.cls)
        for member in acmd.members.values():
            if member.primary_key:
                _assign(obj, member.name, self.key_value(member, entity.key))
            elif member.parent_pk:
                _assign(obj, member.name, self.parent_value(member, entity.key))
            elif member.is_relation:
                # 拥有方的关联对象不随查询加载
                _assign(obj, member.name, entity.key.parent if member.parent_key_provider else None)
            elif member.is_embedded:
                _assign(obj, member.name, self._build_embedded(entity, member))
            else:
                value = entity.properties.get(self.metadata.property_name_for(member))
                _assign(obj, member.name, self.from_datastore_value(member, value))

        if not ignore_cache:
            self.cache.put(entity.key, obj)
        return obj

    def build_identifier_only(self, entity: Entity, cls_or_acmd) -> Any:
        """物化只加载了身份字段的对象"""
        acmd = self._class_metadata(cls_or_acmd)
        cached = self.cache.get(entity.key)
        if cached is not None:
            return cached

        obj = _new_instance(acmd.cls)
        _assign(obj, acmd.primary_key_member.name,
                self.key_value(acmd.primary_key_member, entity.key))
        if acmd.parent_pk_member is not None:
            _assign(obj, acmd.parent_pk_member.name,
                    self.parent_value(acmd.parent_pk_member, entity.key))
        self.cache.put(entity.key, obj, hollow=True)
        return obj

    def build_projection(self, entity: Entity, cls_or_acmd,
                         projection: Sequence[Tuple[Tuple[str, ...], MemberMetadata]]) -> Any:
        """
        物化投影结果

        Returns:
            单个投影字段时返回该值，多个时返回元组
        """
        values = []
        for _, member in projection:
            if member.primary_key:
                values.append(self.key_value(member, entity.key))
            elif member.parent_pk:
                values.append(self.parent_value(member, entity.key))
            elif member.is_embedded:
                values.append(self._build_embedded(entity, member))
            else:
                value = entity.properties.get(self.metadata.property_name_for(member))
                values.append(self.from_datastore_value(member, value))
        if len(values) == 1:
            return values[0]
        return tuple(values)

    def _build_embedded(self, entity: Entity, member: MemberMetadata) -> Any:
        # 嵌入对象的属性与外层对象平铺存放
        props = {m.name: entity.properties.get(self.metadata.property_name_for(m))
                 for m in member.embedded.values() if not m.is_embedded}
        if all(v is None for v in props.values()):
            return None
        obj = _new_instance(member.declared_type)
        for sub in member.embedded.values():
            if sub.is_embedded:
                _assign(obj, sub.name, self._build_embedded(entity, sub))
            else:
                _assign(obj, sub.name, self.from_datastore_value(sub, props[sub.name]))
        return obj

    @staticmethod
    def key_value(member: MemberMetadata, key: Key) -> Any:
        """按主键成员的声明类型暴露键"""
        if member.encoded_key:
            return key_to_string(key)
        if member.declared_type is int:
            return key.id
        if member.declared_type is str:
            return key.name
        return key

    @staticmethod
    def parent_value(member: MemberMetadata, key: Key) -> Any:
        if key.parent is None:
            return None
        if member.encoded_key or member.declared_type is str:
            return key_to_string(key.parent)
        return key.parent

    @staticmethod
    def from_datastore_value(member: MemberMetadata, value: Any) -> Any:
        """存储值转换为领域值"""
        if isinstance(value, list):
            return [EntityMaterializer.from_datastore_value(member, v) for v in value]
        if isinstance(value, ShortBlob):
            return value.value
        declared = member.declared_type
        if isinstance(value, str) and isinstance(declared, type) and issubclass(declared, Enum):
            return declared[value]
        return value

    def to_entity(self, obj: Any, cls_or_acmd, datastore: Optional[Datastore] = None) -> Entity:
        """
        领域对象转换为存储记录

        主键为空时由存储分配数字 ID。
        """
        acmd = self._class_metadata(cls_or_acmd)
        parent = self._parent_key_of(obj, acmd)
        pk_value = getattr(obj, acmd.primary_key_member.name, None)
        if isinstance(pk_value, Key):
            key = pk_value
        elif isinstance(pk_value, str) and acmd.primary_key_member.encoded_key:
            key = string_to_key(pk_value)
        elif pk_value is None and datastore is not None:
            key = Key(acmd.kind, datastore.allocate_id(acmd.kind), parent)
        else:
            key = Key(acmd.kind, pk_value, parent)

        properties: Dict[str, Any] = {}
        for member in acmd.members.values():
            if member.primary_key or member.parent_pk or member.is_relation:
                continue
            value = getattr(obj, member.name, None)
            if member.is_embedded:
                self._flatten_embedded(value, member, properties)
            else:
                properties[self.metadata.property_name_for(member)] = datastore_value(value)
        return Entity(key, properties)

    def _flatten_embedded(self, value: Any, member: MemberMetadata, properties: Dict[str, Any]):
        for sub in member.embedded.values():
            sub_value = getattr(value, sub.name, None) if value is not None else None
            if sub.is_embedded:
                self._flatten_embedded(sub_value, sub, properties)
            else:
                properties[self.metadata.property_name_for(sub)] = datastore_value(sub_value)

    def _parent_key_of(self, obj: Any, acmd: ClassMetadata) -> Optional[Key]:
        candidates: List[Any] = []
        if acmd.parent_pk_member is not None:
            candidates.append(getattr(obj, acmd.parent_pk_member.name, None))
        for member in acmd.members.values():
            if member.is_relation and member.parent_key_provider:
                related = getattr(obj, member.name, None)
                if related is not None and not isinstance(related, (Key, str)):
                    related_acmd = self._class_metadata(member.related_class)
                    related = self._key_of(related, related_acmd)
                candidates.append(related)
        for value in candidates:
            if isinstance(value, Key):
                return value
            if isinstance(value, str):
                return string_to_key(value)
        return None

    def _key_of(self, obj: Any, acmd: ClassMetadata) -> Optional[Key]:
        value = getattr(obj, acmd.primary_key_member.name, None)
        if value is None or isinstance(value, Key):
            return value
        if isinstance(value, str) and acmd.primary_key_member.encoded_key:
            return string_to_key(value)
        return Key(acmd.kind, value, self._parent_key_of(obj, acmd))


def _new_instance(cls: type) -> Any:
    # 绕过 __init__，只加载物化时写入的字段
    return cls.__new__(cls)


def _assign(obj: Any, name: str, value: Any):
    object.__setattr__(obj, name, value)
