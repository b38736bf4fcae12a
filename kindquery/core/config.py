"""
配置管理模块
"""

import os
from typing import Dict, Any
from dataclasses import dataclass, asdict
from pathlib import Path
import yaml
from dotenv import load_dotenv

load_dotenv()


@dataclass
class StorageConfig:
    """存储配置"""
    backend: str = "memory"

    # 事务内的查询必须带祖先约束（与目标存储一致）
    require_ancestor_in_txn: bool = True


@dataclass
class QueryConfig:
    """查询配置"""
    # 祖先查询默认在当前事务中执行，置为 True 可退出
    exclude_query_from_txn: bool = False

    # 批量删除前先按主键读取，只删除仍然存在的记录
    slow_but_more_accurate_delete: bool = False

    # 物化时忽略身份缓存
    ignore_cache: bool = False

    # 存储的 offset/limit 为 32 位整数
    max_range_value: int = 2 ** 31 - 1

    candidate_alias: str = "this"


class Config:
    """主配置类"""

    def __init__(self,
                 storage: StorageConfig = None,
                 query: QueryConfig = None):
        """初始化配置"""
        self.storage = storage or StorageConfig()
        self.query = query or QueryConfig()

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """从配置文件加载配置"""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"配置文件不存在: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> "Config":
        """从字典创建配置"""
        storage_config = StorageConfig(**config_data.get("storage", {}))
        query_config = QueryConfig(**config_data.get("query", {}))

        return cls(
            storage=storage_config,
            query=query_config
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "storage": asdict(self.storage),
            "query": asdict(self.query)
        }

    def save_to_file(self, config_path: str):
        """保存配置到文件"""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


# 环境变量配置
def load_config_from_env() -> Config:
    """从环境变量加载配置"""
    config = Config()

    # 存储配置
    if os.getenv("KQ_STORAGE_BACKEND"):
        config.storage.backend = os.getenv("KQ_STORAGE_BACKEND")
    if os.getenv("KQ_REQUIRE_ANCESTOR_IN_TXN"):
        config.storage.require_ancestor_in_txn = _env_flag("KQ_REQUIRE_ANCESTOR_IN_TXN")

    # 查询配置
    if os.getenv("KQ_EXCLUDE_QUERY_FROM_TXN"):
        config.query.exclude_query_from_txn = _env_flag("KQ_EXCLUDE_QUERY_FROM_TXN")
    if os.getenv("KQ_SLOW_BUT_MORE_ACCURATE_DELETE"):
        config.query.slow_but_more_accurate_delete = _env_flag("KQ_SLOW_BUT_MORE_ACCURATE_DELETE")
    if os.getenv("KQ_IGNORE_CACHE"):
        config.query.ignore_cache = _env_flag("KQ_IGNORE_CACHE")
    if os.getenv("KQ_MAX_RANGE_VALUE"):
        config.query.max_range_value = int(os.getenv("KQ_MAX_RANGE_VALUE"))
    if os.getenv("KQ_CANDIDATE_ALIAS"):
        config.query.candidate_alias = os.getenv("KQ_CANDIDATE_ALIAS")

    return config
