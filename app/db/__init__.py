from __future__ import annotations

from app.db.base import Base, init_models

__all__ = ["Base", "init_models"]
