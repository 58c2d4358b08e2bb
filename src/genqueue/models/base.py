"""Declarative base for all engine tables."""

import time

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def now_ms() -> int:
    """Current wall clock time in milliseconds."""
    return int(time.time() * 1000)
