from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol

from hue_xpl.aliases import AliasResolver, parse_aliases
from hue_xpl.config import AppConfig
from hue_xpl.event_hub import EventHub
from hue_xpl.hue_client import HueClient
from hue_xpl.models import ChangeRecord, CommandOutcome, Rejected, XplCommandBody
from hue_xpl.scheduler import BridgeSession, Scheduler
from hue_xpl.translator import CommandTranslator, is_supported_message
from hue_xpl.xpl import XplMessage
from hue_xpl.xpl_client import CommandHandler, XplClient


logger = logging.getLogger("hue_xpl.service")

STATE_SCHEMA = "sensor.basic"


class BusClient(Protocol):
    def on_command(self, handler: CommandHandler) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def publish(self, record: ChangeRecord, schema: str = STATE_SCHEMA) -> None: ...


class BridgeService:
    def __init__(
        self,
        *,
        bridge: BridgeSession,
        bus: BusClient,
        resolver: AliasResolver,
        hub: EventHub | None = None,
        poll_interval: float = 0.5,
        retry_delay: float = 0.3,
        retry_ceiling: int = 10,
        group_refresh_interval: float = 300.0,
    ) -> None:
        self.bridge = bridge
        self.bus = bus
        self.hub = hub
        self.scheduler = Scheduler(
            bridge=bridge,
            publish=self._publish,
            resolver=resolver,
            poll_interval=poll_interval,
            retry_delay=retry_delay,
            retry_ceiling=retry_ceiling,
            group_refresh_interval=group_refresh_interval,
        )
        self.translator = CommandTranslator(cache=self.scheduler.cache, resolver=resolver)
        self._tasks: set[asyncio.Task] = set()
        bus.on_command(self.handle_message)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        bridge: BridgeSession | None = None,
        bus: BusClient | None = None,
        hub: EventHub | None = None,
    ) -> "BridgeService":
        resolver = AliasResolver(parse_aliases(config.device_aliases))
        logger.debug("Device aliases=%s", len(resolver))
        if bridge is None:
            bridge = HueClient(
                bridge_host=config.bridge_host,
                bridge_port=config.bridge_port,
                username=config.username,
                timeout_ms=config.bridge_timeout_ms,
            )
        if bus is None:
            bus = XplClient(
                source=config.xpl_source,
                broadcast=config.xpl_broadcast,
                port=config.xpl_port,
                bind_host=config.xpl_bind_host,
                heartbeat_interval=config.xpl_heartbeat_seconds,
            )
        return cls(
            bridge=bridge,
            bus=bus,
            resolver=resolver,
            hub=hub,
            poll_interval=config.poll_interval,
            retry_delay=config.retry_delay,
            retry_ceiling=config.retry_ceiling,
            group_refresh_interval=float(config.group_refresh_seconds),
        )

    async def _publish(self, record: ChangeRecord) -> None:
        await self.bus.publish(record, STATE_SCHEMA)
        if self.hub is not None:
            await self.hub.publish(record)

    def handle_message(self, message: XplMessage) -> asyncio.Task | None:
        if not is_supported_message(message.schema):
            return None
        task = asyncio.create_task(self.submit(message.body))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def submit(self, body: XplCommandBody | Mapping[str, Any]) -> CommandOutcome | Rejected:
        result = self.translator.translate(body)
        if isinstance(result, Rejected):
            command = body.command if isinstance(body, XplCommandBody) else body.get("command")
            logger.warning("Dropping command %r: %s", command, result.reason)
            return result

        logger.debug("Request %s targets=%s", result.op, sorted(result.target_keys))
        outcome = await self.scheduler.execute(result)
        if outcome.failed:
            logger.error(
                "Command %s failed for %s of %s targets",
                result.op,
                len(outcome.failed),
                len(outcome.failed) + len(outcome.applied),
            )
        return outcome

    async def start(self) -> None:
        """Check the bridge, then bind the bus; raises before anything runs."""
        count = await self.scheduler.probe()
        logger.info("Bridge reachable, %s lights", count)
        await self.bus.start()

    async def run(self) -> None:
        try:
            await self.scheduler.run()
        finally:
            await self.stop()

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except BaseException:
                pass
        await self.bus.stop()
        close = getattr(self.bridge, "close", None)
        if close is not None:
            await close()
