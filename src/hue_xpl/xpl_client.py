from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable

from hue_xpl.models import ChangeRecord
from hue_xpl.xpl import XPL_CMND, XPL_STAT, XplDecodeError, XplMessage, decode


logger = logging.getLogger("hue_xpl.xpl")

XPL_PORT = 3865

CommandHandler = Callable[[XplMessage], None]


def _local_ip() -> str:
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


class XplClient:

    class _Protocol(asyncio.DatagramProtocol):

        def __init__(self, client: "XplClient") -> None:
            self.client = client

        def datagram_received(self, data: bytes, address) -> None:
            self.client._datagram_received(data, address)

        def error_received(self, exc: Exception) -> None:
            logger.warning("Error received: %s", exc)

        def connection_lost(self, exc: Exception | None) -> None:
            logger.info("Closing xPL transport %s", exc)

    def __init__(
        self,
        *,
        source: str,
        broadcast: str = "255.255.255.255",
        port: int = XPL_PORT,
        bind_host: str = "0.0.0.0",
        listen_port: int = 0,
        heartbeat_interval: float = 300.0,
    ) -> None:
        self.source = source
        self._broadcast = (broadcast, port)
        self._bind = (bind_host, listen_port)
        self._heartbeat_interval = heartbeat_interval
        self._handler: CommandHandler | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self.listen_port: int | None = None

    def on_command(self, handler: CommandHandler) -> None:
        self._handler = handler

    def _create_sock(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind(self._bind)
        return sock

    async def start(self) -> None:
        """Bind the socket and start heartbeats; OSError means the bus is unusable."""
        sock = self._create_sock()
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(lambda: XplClient._Protocol(self), sock=sock)
        self._transport = transport
        self.listen_port = sock.getsockname()[1]
        logger.info("xPL bound on port %s as %s", self.listen_port, self.source)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._transport is not None:
            self._send(self._heartbeat("hbeat.end"))
            self._transport.close()
            self._transport = None

    def _heartbeat(self, schema: str) -> XplMessage:
        return XplMessage(
            msg_type=XPL_STAT,
            source=self.source,
            target="*",
            schema=schema,
            body={
                "interval": str(max(1, int(self._heartbeat_interval // 60))),
                "port": str(self.listen_port or 0),
                "remote-ip": _local_ip(),
            },
        )

    async def _heartbeat_loop(self) -> None:
        while True:
            self._send(self._heartbeat("hbeat.app"))
            await asyncio.sleep(self._heartbeat_interval)

    def _send(self, message: XplMessage) -> None:
        if self._transport is None:
            logger.info("Could not send message. Transport is None.")
            return
        self._transport.sendto(message.encode(), self._broadcast)

    async def send(self, message: XplMessage) -> None:
        self._send(message)

    async def publish(self, record: ChangeRecord, schema: str = "sensor.basic") -> None:
        body = {key: str(value) for key, value in record.as_event().items()}
        await self.send(XplMessage(msg_type=XPL_STAT, source=self.source, target="*", schema=schema, body=body))

    def _datagram_received(self, data: bytes, address) -> None:
        try:
            message = decode(data)
        except XplDecodeError as exc:
            logger.debug("Dropping undecodable datagram from %s: %s", address, exc)
            return
        if message.source == self.source:
            return
        if message.msg_type != XPL_CMND or not message.is_for(self.source):
            return
        if self._handler is None:
            return
        try:
            self._handler(message)
        except Exception:
            logger.exception("xPL command handler failed for %s", message.schema)
