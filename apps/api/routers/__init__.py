"""Routers package."""

from . import (
    health,
    videos,
    workers,
)
