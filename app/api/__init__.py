# app/api/__init__.py
"""
API package bootstrap.

- 这里不做任何重导出
- 路由挂载在 `app/main.py` 中完成
"""

__all__ = []
