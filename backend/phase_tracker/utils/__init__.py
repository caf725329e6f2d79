"""
工具函数包
"""
from .state_paths import get_path, set_path, split_path

__all__ = ["get_path", "set_path", "split_path"]
