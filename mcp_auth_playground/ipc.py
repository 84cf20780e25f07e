"""Length-prefixed JSON messaging over Unix sockets.

Used between the playground and the bridge agent. A connection stays open
and carries any number of messages in both directions; replies are matched
to requests by the ``requestId`` in their payload, not by order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Type alias for IPC message handlers
IPCHandler = Callable[["IPCMessage"], Awaitable["IPCMessage"]]

# Message format: 4-byte length prefix + JSON payload
HEADER_SIZE = 4


class IPCProtocolError(Exception):
    """A frame could not be decoded."""

    pass


@dataclass
class IPCMessage:
    """A message exchanged with the bridge agent."""

    action: str
    payload: dict[str, Any]

    def to_bytes(self) -> bytes:
        """Serialize message to bytes with length prefix."""
        data = json.dumps({"action": self.action, "payload": self.payload}).encode()
        return struct.pack(">I", len(data)) + data

    @classmethod
    def from_bytes(cls, data: bytes) -> "IPCMessage":
        """Deserialize message from JSON bytes.

        Raises:
            IPCProtocolError: If the frame is not a JSON message
        """
        try:
            parsed = json.loads(data.decode())
            return cls(action=parsed["action"], payload=parsed.get("payload") or {})
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise IPCProtocolError(f"Malformed IPC frame: {e}") from e


async def read_message(reader: asyncio.StreamReader) -> IPCMessage | None:
    """Read a length-prefixed message from the stream.

    Returns:
        The message, or None if the peer closed the connection
    """
    try:
        header = await reader.readexactly(HEADER_SIZE)
    except asyncio.IncompleteReadError:
        return None

    (length,) = struct.unpack(">I", header)

    try:
        data = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        logger.warning(
            f"Connection closed during message read: got {len(e.partial)} of {length} bytes"
        )
        return None

    return IPCMessage.from_bytes(data)


async def write_message(writer: asyncio.StreamWriter, message: IPCMessage) -> None:
    """Write a length-prefixed message to the stream."""
    writer.write(message.to_bytes())
    await writer.drain()


class UnixIPCServer:
    """Unix socket server handling many messages per connection.

    Each inbound message is handled in its own task, so a slow request
    never holds up the replies to later ones on the same connection.
    """

    def __init__(self, socket_path: Path, handler: IPCHandler) -> None:
        self.socket_path = socket_path
        self.handler = handler
        self.server: asyncio.Server | None = None

    async def start(self) -> None:
        """Start listening on the Unix socket."""
        # Remove stale socket file if it exists
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.server = await asyncio.start_unix_server(
            self._handle_client, path=str(self.socket_path)
        )

    async def stop(self) -> None:
        """Stop the server and remove the socket file."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        if self.socket_path.exists():
            self.socket_path.unlink()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        write_lock = asyncio.Lock()
        tasks: set[asyncio.Task[None]] = set()

        async def respond(message: IPCMessage) -> None:
            try:
                response = await self.handler(message)
            except Exception as e:
                logger.exception(f"Error in IPC handler: {e}")
                response = IPCMessage(
                    action="ERROR",
                    payload={"requestId": message.payload.get("requestId"), "error": str(e)},
                )
            async with write_lock:
                try:
                    await write_message(writer, response)
                except ConnectionError as e:
                    logger.debug(f"Failed to send reply (connection broken): {e}")

        try:
            while True:
                try:
                    message = await read_message(reader)
                except IPCProtocolError as e:
                    logger.warning(f"Dropping connection after bad frame: {e}")
                    break
                if message is None:
                    break
                task = asyncio.create_task(respond(message))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except ConnectionError as e:
            logger.debug(f"IPC client disconnected: {e}")
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass


async def open_connection(
    socket_path: Path,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter] | None:
    """Connect to a Unix socket.

    Returns:
        (reader, writer), or None if nothing is listening
    """
    if not socket_path.exists():
        return None

    try:
        return await asyncio.open_unix_connection(str(socket_path))
    except OSError as e:
        logger.debug(f"Nothing listening on {socket_path}: {e}")
        return None
