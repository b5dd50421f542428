"""Routes package."""
from __future__ import annotations

from leafcare_server.routes import (  # noqa: I001
    classes,
    health,
    inference,
)


__all__ = ["classes", "health", "inference"]
