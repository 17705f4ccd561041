from __future__ import annotations

import asyncio
import sys
from typing import AsyncIterator, Optional, TextIO


async def stdin_reader(stream: Optional[TextIO] = None, limit: int = 2**16) -> asyncio.StreamReader:
    """
    Wrap the process's stdin in an asyncio StreamReader without blocking the
    event loop, so typed commands are read while a turn is streaming.

    This uses ``connect_read_pipe``; on Windows it requires an event loop
    that supports asynchronous pipes.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, stream if stream is not None else sys.stdin)
    return reader


async def read_lines(reader: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded lines without their terminator until EOF."""
    while True:
        line = await reader.readline()
        if not line:
            return
        yield line.decode("utf-8", errors="replace").rstrip("\r\n")
