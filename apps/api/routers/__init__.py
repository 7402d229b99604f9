"""Routers package."""

from . import (
    health,
    jobs,
    billing,
)
