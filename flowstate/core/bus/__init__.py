from __future__ import annotations

from typing import Any

__all__ = ["FlowBusAsync"]


def __getattr__(name: str) -> Any:
    # Avoid import-time circular dependencies by lazily importing the bus.
    if name == "FlowBusAsync":
        from .async_service import FlowBusAsync  # local import

        return FlowBusAsync
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
