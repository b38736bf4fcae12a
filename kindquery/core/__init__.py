"""
核心模块 - 数据库的主要组件
"""
from .config import Config
from .database import KindQueryDB
from .metadata import MetadataRegistry

__all__ = ["KindQueryDB", "Config", "MetadataRegistry"]
