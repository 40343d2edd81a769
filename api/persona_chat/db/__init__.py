"""Database module exposing the declarative base and ORM models."""

from persona_chat.db.base import Base
from persona_chat.db import models  # noqa: F401

__all__ = ["Base", "models"]
