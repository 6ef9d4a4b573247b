"""
Broker Transport

Persistent TCP stream to the broker with separate connect/send/recv steps.
Each recv is a single read bounded by the per-read timeout, returning
whatever the broker has sent so far (at most max_read_bytes), which is how
the probes compare responses: one read, one prefix check.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from mqttinfo.config import settings
from mqttinfo.exceptions import (
    ConnectionError,
    ConnectionRefusedError as MqttInfoConnectionRefusedError,
    ConnectionTimeoutError,
    ReceiveError,
    ReceiveTimeoutError,
    SendError,
    TransportError,
)

logger = structlog.get_logger()


class BrokerTransport:
    """
    TCP transport with persistent connection support.

    Unlike a request/response transport this keeps the stream open across
    calls, so several probes can share one MQTT session.
    """

    def __init__(
        self,
        host: str,
        port: int,
        dial_timeout_sec: Optional[float] = None,
        read_timeout_sec: Optional[float] = None,
        max_read_bytes: Optional[int] = None,
    ):
        self.host = host
        self.port = port
        self.dial_timeout_sec = (
            dial_timeout_sec if dial_timeout_sec is not None else settings.dial_timeout_sec
        )
        self.read_timeout_sec = (
            read_timeout_sec if read_timeout_sec is not None else settings.read_timeout_sec
        )
        self.max_read_bytes = max_read_bytes or settings.max_read_bytes

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected and self._writer is not None

    async def connect(self) -> None:
        """Establish the TCP connection."""
        if self._connected:
            return

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.dial_timeout_sec,
            )
            self._connected = True
            logger.debug("broker_tcp_connected", host=self.host, port=self.port)
        except asyncio.TimeoutError:
            raise ConnectionTimeoutError(
                f"TCP connection to {self.host}:{self.port} timed out",
                details={"timeout_sec": self.dial_timeout_sec},
            )
        except ConnectionRefusedError as e:
            raise MqttInfoConnectionRefusedError(
                f"TCP connection refused by {self.host}:{self.port}",
                details={"error": str(e)},
            )
        except (OSError, UnicodeError) as e:
            # UnicodeError: host name rejected by the idna codec
            raise ConnectionError(
                f"TCP connection to {self.host}:{self.port} failed: {e}",
                details={"error": str(e)},
            )

    async def send(self, data: bytes) -> None:
        """Send data on the open connection."""
        if not self.connected:
            raise TransportError("Not connected")

        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            self._connected = False
            raise SendError(
                f"Failed to send data to {self.host}:{self.port}",
                details={"error": str(e), "data_size": len(data)},
            )

    async def recv(self, timeout_sec: Optional[float] = None) -> bytes:
        """
        Single read of up to max_read_bytes.

        Raises:
            ReceiveTimeoutError: Nothing arrived before the deadline
            ReceiveError: Peer closed the connection or the read failed
        """
        if not self.connected:
            raise TransportError("Not connected")

        timeout = timeout_sec if timeout_sec is not None else self.read_timeout_sec

        try:
            data = await asyncio.wait_for(
                self._reader.read(self.max_read_bytes),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ReceiveTimeoutError(
                f"Receive timeout from {self.host}:{self.port}",
                details={"timeout_sec": timeout},
            )
        except OSError as e:
            self._connected = False
            raise ReceiveError(
                f"Failed to read from {self.host}:{self.port}",
                details={"error": str(e)},
            )

        if not data:
            self._connected = False
            raise ReceiveError("Connection closed by peer")

        return data

    async def send_and_receive(self, data: bytes, timeout_sec: Optional[float] = None) -> bytes:
        """Combined send and receive for request-response exchanges."""
        await self.send(data)
        return await self.recv(timeout_sec)

    async def close(self) -> None:
        """Close the connection; safe to call more than once."""
        if self._writer:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except OSError as e:
                logger.debug(
                    "broker_tcp_close_error",
                    host=self.host,
                    port=self.port,
                    error=str(e),
                )
        self._reader = None
        self._writer = None
        self._connected = False
