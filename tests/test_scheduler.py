import asyncio

import pytest

from hue_xpl.aliases import AliasResolver
from hue_xpl.hue_client import CONNECTION_RESET, UNREACHABLE, HueTransportError, HueUnauthorizedError, HueUpstreamError
from hue_xpl.models import DeviceSnapshot, GroupSnapshot, MutationRequest, OnCommand
from hue_xpl.scheduler import (
    EXIT_BRIDGE_ERROR,
    EXIT_TOO_MANY_ERRORS,
    EXIT_UNAUTHORIZED,
    Scheduler,
    SessionFatalError,
)


def _light(light_id: str, unique_id: str, **state) -> DeviceSnapshot:
    return DeviceSnapshot(id=light_id, unique_id=unique_id, kind="light", attributes=state)


def _unauthorized() -> HueUnauthorizedError:
    return HueUnauthorizedError(status_code=200, body=[], error_type=1, description="unauthorized user")


def _reset() -> HueTransportError:
    return HueTransportError("connection reset by peer", code=CONNECTION_RESET)


def _request(*keys: str, groups: tuple[str, ...] = ()) -> MutationRequest:
    target_is_group = {k: False for k in keys}
    target_is_group.update({g: True for g in groups})
    return MutationRequest(target_keys=frozenset(target_is_group), target_is_group=target_is_group, command=OnCommand())


@pytest.fixture
def published():
    return []


@pytest.fixture
def make_scheduler(bridge, published):
    def _make(aliases: dict[str, str] | None = None, **kwargs) -> Scheduler:
        async def publish(record):
            published.append(record)

        kwargs.setdefault("poll_interval", 0.001)
        kwargs.setdefault("retry_delay", 0)
        return Scheduler(bridge=bridge, publish=publish, resolver=AliasResolver(aliases or {}), **kwargs)

    return _make


@pytest.fixture
def populated(bridge):
    bridge.lights = [
        _light("1", "00:17:88:01", on=True, reachable=True, bri=254),
        _light("2", "00:17:88:02", on=False, reachable=True),
    ]
    bridge.groups = [GroupSnapshot(id="1", member_device_ids=("1", "2"), name="Living")]
    bridge.sensors = [
        DeviceSnapshot(
            id="5",
            unique_id="00:17:88:aa",
            kind="sensor",
            attributes={"lastupdated": "2024-01-01T10:00:00", "temperature": 2100},
        )
    ]
    return bridge


@pytest.mark.asyncio
async def test_first_sync_publishes_full_state_then_nothing(populated, make_scheduler, published):
    scheduler = make_scheduler()

    first = await scheduler.sync_once()
    keys = {(r.routing_key, r.attribute_name) for r in first}
    assert ("00:17:88:01", "status") in keys
    assert ("00:17:88:01", "brightness") in keys
    assert ("00:17:88:02", "status") in keys
    assert ("group-1", "status") in keys
    assert ("00:17:88:aa", "temperature") in keys
    assert published == first
    assert scheduler.last_sync_at is not None
    assert scheduler.state == "idle"

    assert await scheduler.sync_once() == []
    assert len(published) == len(first)


@pytest.mark.asyncio
async def test_sync_publishes_only_changes(populated, make_scheduler):
    scheduler = make_scheduler()
    await scheduler.sync_once()

    populated.lights[1] = _light("2", "00:17:88:02", on=True, reachable=True)
    records = await scheduler.sync_once()

    # Group 1 was already on through light 1.
    assert [(r.routing_key, r.attribute_name, r.new_value) for r in records] == [
        ("00:17:88:02", "status", "enable")
    ]


@pytest.mark.asyncio
async def test_groups_are_fetched_once_per_refresh_interval(populated, make_scheduler):
    scheduler = make_scheduler()
    await scheduler.sync_once()
    await scheduler.sync_once()
    assert populated.calls["groups"] == 1

    stale = make_scheduler(group_refresh_interval=0)
    await stale.sync_once()
    await stale.sync_once()
    assert populated.calls["groups"] == 3


@pytest.mark.asyncio
async def test_transient_failures_are_retried_and_reset(populated, make_scheduler):
    populated.list_errors["lights"] = [HueTransportError("timeout", code=UNREACHABLE) for _ in range(3)]
    scheduler = make_scheduler()

    records = await scheduler.sync_once()

    assert records
    assert populated.calls["lights"] == 4
    assert scheduler.error_count == 0


@pytest.mark.asyncio
async def test_too_many_consecutive_errors_is_fatal(populated, make_scheduler):
    populated.list_errors["lights"] = [HueTransportError("down", code=UNREACHABLE) for _ in range(20)]
    scheduler = make_scheduler(retry_ceiling=10)

    with pytest.raises(SessionFatalError) as exc:
        await scheduler.sync_once()

    assert exc.value.exit_code == EXIT_TOO_MANY_ERRORS
    assert populated.calls["lights"] == 11
    assert scheduler.state == "idle"


@pytest.mark.asyncio
async def test_unauthorized_during_sync_is_fatal_without_retry(populated, make_scheduler):
    populated.list_errors["lights"] = [_unauthorized()]
    scheduler = make_scheduler()

    with pytest.raises(SessionFatalError) as exc:
        await scheduler.sync_once()

    assert exc.value.exit_code == EXIT_UNAUTHORIZED
    assert populated.calls["lights"] == 1


@pytest.mark.asyncio
async def test_probe_maps_errors_to_exit_codes(populated, make_scheduler):
    scheduler = make_scheduler()
    assert await scheduler.probe() == 2

    populated.list_errors["lights"] = [_unauthorized()]
    with pytest.raises(SessionFatalError) as exc:
        await scheduler.probe()
    assert exc.value.exit_code == EXIT_UNAUTHORIZED

    populated.list_errors["lights"] = [HueTransportError("no route", code=UNREACHABLE)]
    with pytest.raises(SessionFatalError) as exc:
        await scheduler.probe()
    assert exc.value.exit_code == EXIT_BRIDGE_ERROR


@pytest.mark.asyncio
async def test_execute_fans_out_over_aliased_devices(populated, make_scheduler):
    scheduler = make_scheduler({"00:17:88:01": "living", "00:17:88:02": "living"})
    await scheduler.sync_once()

    outcome = await scheduler.execute(_request("living", groups=("group-1",)))

    assert outcome.ok
    assert outcome.op == "on"
    assert sorted((t.bridge_id, t.is_group) for t in outcome.applied) == [("1", False), ("1", True), ("2", False)]
    assert sorted((target_id, is_group) for target_id, is_group, _ in populated.applied) == [
        ("1", False),
        ("1", True),
        ("2", False),
    ]


@pytest.mark.asyncio
async def test_execute_retries_connection_reset(populated, make_scheduler):
    scheduler = make_scheduler()
    await scheduler.sync_once()
    populated.apply_errors["1"] = [_reset(), _reset()]

    outcome = await scheduler.execute(_request("00:17:88:01"))

    assert outcome.ok
    assert populated.calls["apply:1"] == 3


@pytest.mark.asyncio
async def test_execute_does_not_retry_other_errors_and_collects_failures(populated, make_scheduler):
    scheduler = make_scheduler()
    await scheduler.sync_once()
    populated.apply_errors["1"] = [
        HueUpstreamError(status_code=200, body=[], error_type=201, description="device is off")
    ]

    outcome = await scheduler.execute(_request("00:17:88:01", "00:17:88:02"))

    assert not outcome.ok
    assert populated.calls["apply:1"] == 1
    assert [t.bridge_id for t in outcome.applied] == ["2"]
    [(target, reason)] = outcome.failed
    assert target.bridge_id == "1"
    assert "device is off" in reason


@pytest.mark.asyncio
async def test_execute_gives_up_after_repeated_resets(populated, make_scheduler):
    scheduler = make_scheduler(retry_ceiling=2)
    await scheduler.sync_once()
    populated.apply_errors["1"] = [_reset() for _ in range(5)]

    outcome = await scheduler.execute(_request("00:17:88:01"))

    assert not outcome.ok
    assert populated.calls["apply:1"] == 3
    assert "reset" in outcome.failed[0][1]


@pytest.mark.asyncio
async def test_execute_with_unknown_key_does_nothing(populated, make_scheduler):
    scheduler = make_scheduler()
    outcome = await scheduler.execute(_request("kitchen"))
    assert outcome.ok
    assert outcome.applied == []
    assert populated.applied == []


@pytest.mark.asyncio
async def test_unauthorized_command_stops_the_run_loop(populated, make_scheduler):
    scheduler = make_scheduler()
    runner = asyncio.create_task(scheduler.run())
    try:
        for _ in range(100):
            if scheduler.last_sync_at is not None:
                break
            await asyncio.sleep(0.01)
        assert scheduler.last_sync_at is not None

        populated.apply_errors["1"] = [_unauthorized()]
        outcome = await scheduler.execute(_request("00:17:88:01"))
        assert not outcome.ok

        with pytest.raises(SessionFatalError) as exc:
            await asyncio.wait_for(runner, timeout=1.0)
        assert exc.value.exit_code == EXIT_UNAUTHORIZED
    finally:
        runner.cancel()


@pytest.mark.asyncio
async def test_commands_and_polls_never_overlap(populated, make_scheduler):
    events: list[str] = []
    original_list_lights = populated.list_lights
    original_apply = populated.apply_state

    async def list_lights():
        events.append("poll-start")
        await asyncio.sleep(0.01)
        result = await original_list_lights()
        events.append("poll-end")
        return result

    async def apply_state(target_id, is_group, command):
        events.append("apply-start")
        await asyncio.sleep(0.01)
        result = await original_apply(target_id, is_group, command)
        events.append("apply-end")
        return result

    populated.list_lights = list_lights
    populated.apply_state = apply_state

    scheduler = make_scheduler()
    await scheduler.sync_once()
    events.clear()

    await asyncio.gather(scheduler.execute(_request("00:17:88:01")), scheduler.sync_once())

    assert events == ["apply-start", "apply-end", "poll-start", "poll-end"]


@pytest.mark.asyncio
async def test_publish_failures_are_logged_not_fatal(populated):
    attempted = []

    async def publish(record):
        attempted.append(record)
        if record.attribute_name == "status":
            raise OSError("bus unreachable")

    scheduler = Scheduler(
        bridge=populated, publish=publish, resolver=AliasResolver({}), poll_interval=0.001, retry_delay=0
    )

    sent = await scheduler.sync_once()

    assert any(r.attribute_name == "status" for r in attempted)
    assert sent
    assert all(r.attribute_name != "status" for r in sent)
    assert len(sent) == len(attempted) - sum(1 for r in attempted if r.attribute_name == "status")
    assert not scheduler._session.locked()
    assert scheduler.error_count == 0
    assert scheduler.last_sync_at is not None
