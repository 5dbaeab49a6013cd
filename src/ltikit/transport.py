"""
Outbound HTTP client handling.

Engines accept an optional shared ``httpx.AsyncClient``.  When none is
given, a short-lived client is opened per request.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx


@asynccontextmanager
async def outbound(
    client: httpx.AsyncClient | None, timeout: float
) -> AsyncGenerator[httpx.AsyncClient, None]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as fresh:
        yield fresh
