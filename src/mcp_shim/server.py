"""
MCP shim server: the stdin/stdout side of the bridge.

Each request line is handled by its own task so a slow upstream call does
not hold up reading; responses are written in input order.
"""

import asyncio
import logging
import signal
import sys
from typing import AsyncIterator, Callable, Optional, Set, Tuple

from mcp_shim.config import ShimConfig
from mcp_shim.forwarder import Forwarder
from mcp_shim.logging_config import get_logger
from mcp_shim.paths import PathSanitizer
from mcp_shim.protocol import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    Request,
    RequestParseError,
    Response,
    make_error_response,
    serialize,
)

logger = get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024
LOG_PREVIEW_CHARS = 1000


async def read_lines(
    reader: asyncio.StreamReader,
    max_line_bytes: int,
    chunk_size: int = READ_CHUNK_SIZE,
) -> AsyncIterator[Optional[bytes]]:
    """
    Yield lines (without the terminator) from a stream.

    A partial line that grows beyond ``max_line_bytes`` is dropped as it
    arrives and reported once as ``None``; the rest of it up to the next
    newline is discarded. Complete lines are yielded whatever their size.
    """
    buffer = bytearray()
    discarding = False
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        buffer.extend(chunk)

        while True:
            index = buffer.find(b"\n")
            if index < 0:
                break
            line = bytes(buffer[:index])
            del buffer[: index + 1]
            if discarding:
                discarding = False
                continue
            yield line.rstrip(b"\r")

        if discarding:
            buffer.clear()
        elif len(buffer) > max_line_bytes:
            logger.warning(f"Request line too large (over {len(buffer)} bytes)")
            buffer.clear()
            discarding = True
            yield None

    if buffer and not discarding:
        yield bytes(buffer).rstrip(b"\r")


def write_stdout(text: str) -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


class LineProcessor:
    """Reads JSON-RPC lines, forwards them and writes one response per request."""

    def __init__(
        self,
        config: ShimConfig,
        forwarder: Optional[Forwarder] = None,
        sanitizer: Optional[PathSanitizer] = None,
        write: Callable[[str], None] = write_stdout,
    ):
        """
        Initialize the line processor.

        Args:
            config: Shim configuration
            forwarder: Forwarder to the remote proxy. Built from config when omitted.
            sanitizer: Path sanitizer. Enabled only for the filesystem server when omitted.
            write: Callback receiving each serialized response line
        """
        self.config = config
        self.forwarder = forwarder if forwarder is not None else Forwarder(config)
        self.sanitizer = sanitizer if sanitizer is not None else PathSanitizer(
            config.allowed_paths, enabled=config.is_filesystem
        )
        self._write = write
        self._pending: Set[asyncio.Task] = set()
        self._queue: "asyncio.Queue[Optional[asyncio.Task]]" = asyncio.Queue()
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        """Request an orderly shutdown (safe to call from a signal handler)."""
        if not self._stop_event.is_set():
            logger.info("MCP shim shutting down")
            self._stop_event.set()

    async def handle_line(self, line: Optional[bytes]) -> Response:
        """
        Turn one input line into its response.

        Args:
            line: Raw line bytes, or None for a line dropped as oversize

        Returns:
            JSON-RPC response for the line
        """
        if line is None:
            return make_error_response(None, INVALID_REQUEST, "Request too large")
        if len(line) > self.config.max_request_size:
            logger.warning(f"Request line too large ({len(line)} bytes)")
            return make_error_response(None, INVALID_REQUEST, "Request too large")

        try:
            text = line.decode("utf-8")
            if logger.isEnabledFor(logging.DEBUG):
                preview = text if len(text) <= LOG_PREVIEW_CHARS else text[:LOG_PREVIEW_CHARS] + "..."
                logger.debug(f"Received request: {preview}")
            request = Request.from_json(text)
        except (RequestParseError, UnicodeDecodeError) as e:
            logger.error(f"Error processing request: {e}")
            return make_error_response(None, PARSE_ERROR, f"Parse error: {e}")

        request = self.sanitizer.process_request(request)
        return await self.forwarder.forward(request)

    async def _read(self, reader: asyncio.StreamReader) -> None:
        async for line in read_lines(reader, self.config.max_request_size):
            if line is not None and not line.strip():
                continue
            task = asyncio.create_task(self.handle_line(line))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            await self._queue.put(task)

    async def _write_responses(self) -> None:
        while True:
            task = await self._queue.get()
            if task is None:
                return
            try:
                response = await task
            except Exception as e:
                # Answer the failed line and keep going
                logger.error(f"Error processing request: {e}", exc_info=True)
                response = make_error_response(None, INTERNAL_ERROR, f"Internal shim error: {e}")
            self._write(serialize(response))

    async def run(self, reader: asyncio.StreamReader) -> None:
        """
        Process input until end of stream or until stop() is called.

        At end of input, in-flight requests are allowed to finish. After
        stop(), in-flight requests are cancelled without a response.
        """
        read_task = asyncio.create_task(self._read(reader))
        write_task = asyncio.create_task(self._write_responses())
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {read_task, write_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if read_task in done and stop_task not in done:
                read_task.result()
                logger.debug("End of input; waiting for %d in-flight request(s)", len(self._pending))
                await self._queue.put(None)
                await asyncio.wait({write_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if write_task.done() and not write_task.cancelled():
                write_task.result()
        finally:
            if self._pending:
                logger.debug("Cancelling %d in-flight request(s)", len(self._pending))
            tasks = [read_task, write_task, stop_task, *self._pending]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        await self.forwarder.aclose()


async def open_stdin_reader() -> Tuple[asyncio.StreamReader, Optional[asyncio.Task]]:
    """
    Wrap stdin in a StreamReader.

    Pipes and terminals are read by the event loop directly. A regular file
    (``mcp-shim < requests.jsonl``) cannot be, so it is pumped from the
    default executor; the pump task is returned so the caller can cancel it.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
        return reader, None
    except ValueError:
        pass

    async def pump() -> None:
        while True:
            chunk = await loop.run_in_executor(None, sys.stdin.buffer.read1, READ_CHUNK_SIZE)
            if not chunk:
                reader.feed_eof()
                return
            reader.feed_data(chunk)

    return reader, asyncio.create_task(pump())


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exception = context.get("exception")
    logger.error(
        f"Unhandled error in event loop: {context.get('message')}",
        exc_info=exception if isinstance(exception, BaseException) else None,
    )


async def serve(config: ShimConfig) -> None:
    """Run the shim on the process's stdin/stdout until EOF or a termination signal."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_log_unhandled)

    logger.info(
        "MCP shim started",
        extra={"data": {"serverName": config.server_name, "proxyUrl": config.proxy_url}},
    )
    if config.allowed_paths:
        logger.info("Allowed paths configured", extra={"data": {"paths": config.allowed_paths}})

    processor = LineProcessor(config)
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, processor.stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform
            logger.debug("Signal handler for %s not installed", sig)

    reader, pump_task = await open_stdin_reader()
    try:
        await processor.run(reader)
    finally:
        if pump_task is not None:
            pump_task.cancel()
        await processor.aclose()
