"""
存储层模块 - 键、存储客户端与记录
"""

from .keys import Key
from .datastore import Datastore, Entity

__all__ = ["Key", "Datastore", "Entity"]
