"""
relay_server.py — Transparent TCP relay to a single upstream.

Architecture
------------
A ``RelayServer`` binds a local TCP port.  Every accepted client
connection becomes a ``Session`` which dials the fixed upstream
address and then copies bytes in both directions until either side
closes or fails.  Payload bytes are never inspected or modified.

Key components:

* **RelayServer** — owns the ``asyncio.Server`` and the set of live
  session tasks.
* **Session** — one client connection plus its upstream connection;
  dial with timeout, run both directions, tear everything down.
* **forward** — the copy loop for one direction.  It never returns
  normally: an orderly close of the source is reported as
  ``UnexpectedEofError`` so that the session tears down.
* **ManagedConnection** — ``(StreamReader, StreamWriter)`` pair with an
  idempotent ``close()``.

Threading model
~~~~~~~~~~~~~~~
Everything runs on a single asyncio event loop.  Each connection is
split into its read half (``StreamReader``) and write half
(``StreamWriter``); the two directions of a session each own one half
of both connections, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import traceback
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass
from typing import Any, NoReturn, Optional


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class RelayConfig:
    """Tunable knobs for the relay.

    All timeouts are in seconds.  Buffer sizes are in bytes.

    Attributes
    ----------
    dial_timeout:
        Maximum time allowed for the TCP connect to the upstream.  On
        expiry the client connection is closed and the session ends.
    buffer_size:
        Largest chunk read from a source in one go by ``forward``.
    close_timeout:
        How long a graceful close may wait for buffered data to flush
        before the transport is aborted.
    """

    dial_timeout: float = 15.0
    buffer_size: int = 1024
    close_timeout: float = 2.0


DEFAULT_CONFIG = RelayConfig()

CLIENT_TO_SERVER = "client to server"
SERVER_TO_CLIENT = "server to client"


def parse_address(text: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6addr]:port``) into ``(host, port)``."""
    host, sep, port_str = text.strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"address must be host:port, got {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in address {text!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in address {text!r}")
    return host, port


class UnexpectedEofError(EOFError):
    """The source of a direction was closed by its peer (zero-byte read)."""

    def __init__(self, direction: str):
        super().__init__(f"{direction}: unexpected end of stream")
        self.direction = direction


# ============================================================================
# Connection Management
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    The reader is the read half and the writer the write half of the
    same socket; they can be driven from different tasks concurrently.
    ``close()`` is safe to call any number of times from any of them.
    """

    __slots__ = ("reader", "writer", "peer", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "?"
        self._closed = False

    async def close(self, force: bool = False, timeout: float = 2.0) -> None:
        """Close the underlying transport.

        Parameters
        ----------
        force:
            If ``True``, abort the transport immediately (RST) without
            flushing buffered data.
        timeout:
            How long a graceful close may take before falling back to
            ``abort()``.
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if force:
                transport.abort()
            if transport is None or transport.is_closing():
                return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                transport = self.writer.transport
                if transport and not transport.is_closing():
                    transport.abort()
            except Exception as e:
                logger.debug(e)
            logger.trace("Close of %s timed out, aborted", self.peer)
        except Exception as e:
            logger.debug("Connection close error (%s): %s", self.peer, e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()


# ============================================================================
# Forwarding
# ============================================================================


async def forward(
    name: str,
    source: StreamReader,
    destination: StreamWriter,
    buffer_size: int = DEFAULT_CONFIG.buffer_size,
) -> NoReturn:
    """Copy bytes from *source* to *destination* until something fails.

    There is no successful return.  A zero-byte read raises
    :class:`UnexpectedEofError`; read and write errors propagate as-is.
    Each chunk is written in full (``drain()`` waits for the transport's
    buffer to empty below its high-water mark) before the next read, so
    a slow destination throttles the source.
    """
    while True:
        data = await source.read(buffer_size)
        if not data:
            logger.debug("%s: read 0 bytes, other side closed", name)
            raise UnexpectedEofError(name)
        destination.write(data)
        await destination.drain()
        logger.trace("%s: %d bytes", name, len(data))


# ============================================================================
# Session
# ============================================================================


_session_ids = itertools.count(1)


class Session:
    """One relayed client connection.

    Lifecycle: dial upstream (bounded by ``dial_timeout``), run both
    directions concurrently, and as soon as either of them fails cancel
    the other and close both connections.  Nothing is retried.
    """

    __slots__ = ("id", "client", "upstream", "upstream_addr", "config", "created_at")

    def __init__(
        self,
        client: ManagedConnection,
        upstream_addr: tuple[str, int],
        config: RelayConfig = DEFAULT_CONFIG,
    ):
        self.id = next(_session_ids)
        self.client = client
        self.upstream: Optional[ManagedConnection] = None
        self.upstream_addr = upstream_addr
        self.config = config
        self.created_at = time.monotonic()

    @property
    def upstream_label(self) -> str:
        host, port = self.upstream_addr
        return f"{host}:{port}"

    async def run(self) -> None:
        logger.debug("[#%d] handling %s", self.id, self.client.peer)
        try:
            try:
                self.upstream = await self._connect_upstream()
            except asyncio.TimeoutError:
                logger.warning(
                    "[#%d] upstream %s dial timed out after %.1fs",
                    self.id,
                    self.upstream_label,
                    self.config.dial_timeout,
                )
                return
            except OSError as e:
                logger.warning(
                    "[#%d] upstream %s dial failed: %s",
                    self.id,
                    self.upstream_label,
                    e,
                )
                return

            logger.debug(
                "[#%d] %s <-> %s connected in %.3fs",
                self.id,
                self.client.peer,
                self.upstream_label,
                time.monotonic() - self.created_at,
            )
            await self._relay(self.upstream)
        finally:
            await self._close()
            logger.debug(
                "[#%d] done after %.3fs", self.id, time.monotonic() - self.created_at
            )

    async def _connect_upstream(self) -> ManagedConnection:
        host, port = self.upstream_addr
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=self.config.dial_timeout,
        )
        return ManagedConnection(reader, writer)

    async def _relay(self, upstream: ManagedConnection) -> None:
        client = self.client
        size = self.config.buffer_size
        directions = [
            asyncio.create_task(
                forward(CLIENT_TO_SERVER, client.reader, upstream.writer, size),
                name=CLIENT_TO_SERVER,
            ),
            asyncio.create_task(
                forward(SERVER_TO_CLIENT, upstream.reader, client.writer, size),
                name=SERVER_TO_CLIENT,
            ),
        ]
        try:
            done, _ = await asyncio.wait(
                directions, return_when=asyncio.FIRST_EXCEPTION
            )
        finally:
            # The sibling of a failed direction may be parked on a read
            # from a half-open peer; cancel it instead of waiting.
            for task in directions:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*directions, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if isinstance(exc, UnexpectedEofError):
                logger.debug("[#%d] %s", self.id, exc)
            elif exc is not None:
                logger.info(
                    "[#%d] %s failed (%s <-> %s): %s: %s",
                    self.id,
                    task.get_name(),
                    self.client.peer,
                    self.upstream_label,
                    type(exc).__name__,
                    exc,
                )

    async def _close(self) -> None:
        timeout = self.config.close_timeout
        closing = [self.client.close(timeout=timeout)]
        if self.upstream is not None:
            closing.append(self.upstream.close(timeout=timeout))
        await asyncio.gather(*closing)


# ============================================================================
# RelayServer — the listener
# ============================================================================


class RelayServer:
    """Accepts client connections and relays each one to *upstream*.

    Usage::

        relay = RelayServer("10.0.0.5:4044", host="0.0.0.0", port=4040)
        port = await relay.start()
        await relay.serve_forever()

    Sessions are independent: no limit on how many run at once, and one
    session failing never affects another or the listener.
    """

    def __init__(
        self,
        upstream: str,
        host: str = "127.0.0.1",
        port: int = 0,
        config: RelayConfig = DEFAULT_CONFIG,
    ):
        self.host = host
        self.port = port
        self.upstream = upstream
        self.upstream_addr = parse_address(upstream)
        self.config = config

        self._server: Optional[asyncio.Server] = None
        self._sessions: set[asyncio.Task] = set()
        self._previous_handler: Optional[Any] = None
        self._accept_handler: Optional[Any] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Start listening.  Returns the bound port number.

        Raises ``OSError`` if the address cannot be bound.
        """
        self._server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
            reuse_address=True,
        )
        # asyncio's accept loop reports transient accept() failures
        # (e.g. EMFILE) to the exception handler and keeps accepting.
        loop = asyncio.get_running_loop()
        _default_handler = loop.get_exception_handler()
        self._previous_handler = _default_handler

        def _accept_exception_handler(
            loop: asyncio.AbstractEventLoop, context: dict
        ) -> None:
            msg = context.get("message", "")
            if isinstance(msg, str) and "accept" in msg.lower():
                logger.warning(
                    "Accept error on %s:%d: %s (%s)",
                    self.host,
                    self.port,
                    msg,
                    context.get("exception"),
                )
                return

            if _default_handler:
                _default_handler(loop, context)
            else:
                loop.default_exception_handler(context)

        self._accept_handler = _accept_exception_handler
        loop.set_exception_handler(_accept_exception_handler)

        sock = self._server.sockets[0]
        self.port = sock.getsockname()[1]
        logger.info(
            "Relay listening on %s:%d -> %s", self.host, self.port, self.upstream
        )
        return self.port

    async def serve_forever(self) -> None:
        if self._server is None:
            raise RuntimeError("RelayServer.start() has not been called")
        await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop accepting new connections and cancel live sessions."""
        if self._server:
            self._server.close()
        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            logger.info("Cancelling %d active session(s)", len(sessions))
            await asyncio.gather(*sessions, return_exceptions=True)
        if self._server:
            try:
                await asyncio.wait_for(
                    self._server.wait_closed(), timeout=self.config.close_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for listener to close")
            self._server = None
        if self._accept_handler is not None:
            loop = asyncio.get_running_loop()
            # Only unwind our own handler; a later one may have replaced it.
            if loop.get_exception_handler() is self._accept_handler:
                loop.set_exception_handler(self._previous_handler)
            self._accept_handler = None
            self._previous_handler = None
        logger.info("Relay stopped (was :%d)", self.port)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # -- per-connection ----------------------------------------------------

    async def _handle_client(
        self, reader: StreamReader, writer: StreamWriter
    ) -> None:
        """Entry point for each accepted connection (called by ``asyncio.Server``)."""
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
        client = ManagedConnection(reader, writer)
        try:
            await Session(client, self.upstream_addr, self.config).run()
        except asyncio.CancelledError:
            # Cancelled by stop(). This task belongs to asyncio's stream
            # protocol, which logs any exception it finds on it.
            logger.debug("Session for %s cancelled", client.peer)
            await client.close(force=True)
        except Exception:
            logger.error("Session error: %s", traceback.format_exc())
            await client.close(force=True)
        finally:
            self._sessions.discard(task)


async def run(
    bind_address: str,
    upstream_address: str,
    config: RelayConfig = DEFAULT_CONFIG,
) -> None:
    """Bind *bind_address* and relay every connection to *upstream_address*.

    Only returns by raising: ``OSError`` if the bind fails, or
    ``CancelledError`` when the surrounding task is cancelled.
    """
    host, port = parse_address(bind_address)
    relay = RelayServer(upstream_address, host, port, config)
    await relay.start()
    try:
        await relay.serve_forever()
    finally:
        await relay.stop()


# ============================================================================
# Logging
# ============================================================================

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colors = {
            TRACE: "\033[0;37m",
            logging.DEBUG: "\033[0m",
            logging.INFO: "\033[34m",
            logging.WARNING: "\033[1;33m",
            logging.ERROR: "\033[1;31m",
            logging.CRITICAL: "\033[1;37;41m",
        }
        c = colors.get(record.levelno, "\033[0m")
        # Colour a copy; other handlers share the original record.
        record = logging.makeLogRecord(record.__dict__)
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}\033[0m"
        record.levelname = f"{c}{record.levelname:<8}\033[0m"
        return super().format(record)


logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]
logger.setLevel(logging.DEBUG)

_handler = logging.StreamHandler()
_handler.setLevel(logging.DEBUG)
_handler.setFormatter(
    ColoredFormatter(
        "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"
    )
)
logger.addHandler(_handler)
