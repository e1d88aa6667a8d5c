"""Bidirectional stream relay."""

import asyncio

from pxx.utils.logger import get_logger

logger = get_logger(__name__)


def close_write(writer: asyncio.StreamWriter) -> None:
    """
    Signal end-of-stream to the peer behind `writer`.

    Half-closes when the transport supports it, otherwise closes it fully.
    """
    if writer.transport.is_closing():
        return
    try:
        if writer.can_write_eof():
            writer.write_eof()
            return
    except (OSError, NotImplementedError):
        pass
    writer.close()


async def bind_reader_writer(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    buffer_size: int = 64 * 1024,
) -> int:
    """
    Pipe data from reader to writer until EOF or error.

    At most one chunk is in flight: every write is drained before the next
    read, so a slow writer throttles the reader.

    Args:
        reader: AsyncIO stream reader.
        writer: AsyncIO stream writer.
        buffer_size: Maximum bytes per read.

    Returns:
        Number of bytes copied.
    """
    copied = 0
    try:
        while True:
            data = await reader.read(buffer_size)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            copied += len(data)
    except OSError as e:
        logger.debug(f"Relay direction ended with error: {e}")
    finally:
        close_write(writer)
    return copied


async def relay(
    inbound_reader: asyncio.StreamReader,
    inbound_writer: asyncio.StreamWriter,
    outbound_reader: asyncio.StreamReader,
    outbound_writer: asyncio.StreamWriter,
    buffer_size: int = 64 * 1024,
) -> tuple[int, int]:
    """
    Relay both directions concurrently until both have finished.

    Returns:
        (bytes inbound -> outbound, bytes outbound -> inbound)
    """
    upstream = asyncio.create_task(
        bind_reader_writer(inbound_reader, outbound_writer, buffer_size)
    )
    downstream = asyncio.create_task(
        bind_reader_writer(outbound_reader, inbound_writer, buffer_size)
    )
    results = await asyncio.gather(upstream, downstream, return_exceptions=True)
    sent, received = (r if isinstance(r, int) else 0 for r in results)
    return sent, received
