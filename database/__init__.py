"""数据库模块 —— 对外只暴露 DatabaseManager。"""
from .manager import DatabaseManager

__all__ = ["DatabaseManager"]
