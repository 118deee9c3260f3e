"""Puente entre el event loop y el acceso síncrono a BD (SQLAlchemy)."""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Ejecuta ``func`` en el thread pool por defecto sin bloquear el loop."""
    return await asyncio.get_event_loop().run_in_executor(
        None,
        functools.partial(func, *args, **kwargs),
    )
