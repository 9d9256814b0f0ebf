from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from hue_xpl.aliases import AliasResolver
from hue_xpl.cache import StateCache
from hue_xpl.differ import Differ, derive_group_status
from hue_xpl.hue_client import HueTransportError, HueUnauthorizedError, HueUpstreamError, is_connection_reset
from hue_xpl.models import (
    ChangeRecord,
    CommandOutcome,
    DeviceSnapshot,
    GroupSnapshot,
    MutationRequest,
    NormalizedCommand,
    Target,
)
from hue_xpl.retry import FailureCounter, RetriesExhaustedError, attempt


logger = logging.getLogger("hue_xpl.scheduler")

EXIT_TOO_MANY_ERRORS = 2
EXIT_UNAUTHORIZED = 4
EXIT_BRIDGE_ERROR = 5

Publisher = Callable[[ChangeRecord], Awaitable[None]]


class BridgeSession(Protocol):
    async def list_lights(self) -> list[DeviceSnapshot]: ...

    async def list_sensors(self) -> list[DeviceSnapshot]: ...

    async def list_groups(self) -> list[GroupSnapshot]: ...

    async def apply_state(self, target_id: str, is_group: bool, command: NormalizedCommand) -> Any: ...


class SessionFatalError(Exception):
    def __init__(self, message: str, *, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


def _sync_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, HueUnauthorizedError)


@dataclass
class SyncContext:
    """Everything a scheduler instance remembers between polls."""

    cache: StateCache
    differ: Differ
    errors: FailureCounter
    groups: list[GroupSnapshot] = field(default_factory=list)
    groups_fetched_at: float | None = None
    last_sync_at: float | None = None

    @classmethod
    def create(cls, *, resolver: AliasResolver, retry_ceiling: int) -> "SyncContext":
        cache = StateCache()
        return cls(cache=cache, differ=Differ(cache=cache, resolver=resolver), errors=FailureCounter(retry_ceiling))


class Scheduler:
    def __init__(
        self,
        *,
        bridge: BridgeSession,
        publish: Publisher,
        resolver: AliasResolver,
        poll_interval: float = 0.5,
        retry_delay: float = 0.3,
        retry_ceiling: int = 10,
        group_refresh_interval: float = 300.0,
    ) -> None:
        self.bridge = bridge
        self.publish = publish
        self.resolver = resolver
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.retry_ceiling = retry_ceiling
        self.group_refresh_interval = group_refresh_interval
        self.context = SyncContext.create(resolver=resolver, retry_ceiling=retry_ceiling)
        self.state = "idle"
        self._session = asyncio.Lock()
        self._fatal: asyncio.Future[None] | None = None

    @property
    def cache(self) -> StateCache:
        return self.context.cache

    @property
    def error_count(self) -> int:
        return self.context.errors.count

    @property
    def last_sync_at(self) -> float | None:
        return self.context.last_sync_at

    async def _fetch(self, op: Callable[[], Awaitable[Any]], label: str) -> Any:
        try:
            return await attempt(
                op,
                max_retries=self.retry_ceiling,
                delay=self.retry_delay,
                retryable=_sync_retryable,
                counter=self.context.errors,
                label=label,
            )
        except HueUnauthorizedError as exc:
            raise SessionFatalError(f"Bridge refused the configured user: {exc}", exit_code=EXIT_UNAUTHORIZED) from exc
        except RetriesExhaustedError as exc:
            raise SessionFatalError(f"Too many errors, stopping: {exc}", exit_code=EXIT_TOO_MANY_ERRORS) from exc

    async def _publish_all(self, records: list[ChangeRecord]) -> list[ChangeRecord]:
        """Publishes concurrently; returns the records that were actually sent."""
        if not records:
            return []
        self.state = "publishing"
        results = await asyncio.gather(*(self.publish(r) for r in records), return_exceptions=True)
        sent: list[ChangeRecord] = []
        for record, result in zip(records, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Publish of %s/%s failed: %s", record.routing_key, record.attribute_name, result
                )
            else:
                sent.append(record)
        return sent

    async def probe(self) -> int:
        """Single unretried light listing used as a startup check."""
        async with self._session:
            try:
                lights = await self.bridge.list_lights()
            except HueUnauthorizedError as exc:
                raise SessionFatalError(f"Bridge refused the configured user: {exc}", exit_code=EXIT_UNAUTHORIZED) from exc
            except (HueTransportError, HueUpstreamError) as exc:
                raise SessionFatalError(f"Hue error: {exc}", exit_code=EXIT_BRIDGE_ERROR) from exc
        return len(lights)

    async def _refresh_groups(self) -> list[GroupSnapshot]:
        groups = await self._fetch(self.bridge.list_groups, "list groups")
        self.context.groups = list(groups)
        self.context.groups_fetched_at = time.monotonic()
        logger.debug("Fetched %s groups", len(groups))
        return self.context.groups

    def _groups_stale(self) -> bool:
        fetched = self.context.groups_fetched_at
        return fetched is None or (time.monotonic() - fetched) >= self.group_refresh_interval

    async def sync_once(self) -> list[ChangeRecord]:
        """One poll-diff-publish cycle under the session lock."""
        published: list[ChangeRecord] = []
        if self.state == "idle":
            self.state = "acquiring"
        async with self._session:
            try:
                if self._groups_stale():
                    await self._refresh_groups()

                self.state = "syncing-lights"
                lights: list[DeviceSnapshot] = await self._fetch(self.bridge.list_lights, "list lights")
                differ = self.context.differ
                records = differ.diff_all(lights)
                by_id = {light.id: light for light in lights}
                records.extend(differ.diff_all(derive_group_status(g, by_id) for g in self.context.groups))
                published.extend(await self._publish_all(records))

                self.state = "syncing-sensors"
                sensors: list[DeviceSnapshot] = await self._fetch(self.bridge.list_sensors, "list sensors")
                records = differ.diff_all(sensors)
                published.extend(await self._publish_all(records))

                self.context.last_sync_at = time.time()
            finally:
                self.state = "idle"
        return published

    async def run(self) -> None:
        """Poll forever; returns only by raising SessionFatalError."""
        loop = asyncio.get_running_loop()
        self._fatal = loop.create_future()
        sync_task = asyncio.create_task(self._sync_loop())
        try:
            done, _ = await asyncio.wait({sync_task, self._fatal}, return_when=asyncio.FIRST_COMPLETED)
            for fut in done:
                fut.result()
        finally:
            sync_task.cancel()
            try:
                await sync_task
            except asyncio.CancelledError:
                pass
            except SessionFatalError:
                pass

    async def _sync_loop(self) -> None:
        while True:
            records = await self.sync_once()
            if records:
                logger.debug("Published %s changes", len(records))
            await asyncio.sleep(self.poll_interval)

    def _escalate(self, error: SessionFatalError) -> None:
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_exception(error)

    def _targets(self, request: MutationRequest) -> list[Target]:
        targets: list[Target] = []
        for key in request.device_keys() + request.group_keys():
            entry = self.cache.get(key)
            if entry is None:
                continue
            is_group = request.target_is_group.get(key, False)
            for bridge_id in sorted(entry.bridge_ids):
                targets.append(Target(routing_key=key, bridge_id=bridge_id, is_group=is_group))
        return targets

    async def _apply(self, target: Target, command: NormalizedCommand) -> None:
        async def _op() -> Any:
            return await self.bridge.apply_state(target.bridge_id, target.is_group, command)

        await attempt(
            _op,
            max_retries=self.retry_ceiling,
            delay=self.retry_delay,
            retryable=is_connection_reset,
            label=f"set {target.label}",
        )

    async def execute(self, request: MutationRequest) -> CommandOutcome:
        """
        Apply one mutation to every target while holding the session.
        Each target retries on its own; failures are collected, not raised.
        """
        outcome = CommandOutcome(op=request.op)
        targets = self._targets(request)
        if not targets:
            return outcome

        if self.state == "idle":
            self.state = "acquiring"
        async with self._session:
            self.state = "executing"
            try:
                results = await asyncio.gather(
                    *(self._apply(t, request.command) for t in targets), return_exceptions=True
                )
            finally:
                self.state = "idle"

        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                if isinstance(result, HueUnauthorizedError):
                    self._escalate(
                        SessionFatalError(f"Bridge refused the configured user: {result}", exit_code=EXIT_UNAUTHORIZED)
                    )
                if isinstance(result, RetriesExhaustedError):
                    reason = str(result.last_error)
                else:
                    reason = str(result)
                logger.error("Set %s %s failed: %s", target.label, request.op, reason)
                outcome.failed.append((target, reason))
            else:
                outcome.applied.append(target)
                self.context.errors.reset()
        return outcome
