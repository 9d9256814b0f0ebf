from __future__ import annotations

import asyncio
import logging

import uvicorn

from hue_xpl.app import AppState, app
from hue_xpl.config import AppConfig
from hue_xpl.event_hub import EventHub
from hue_xpl.scheduler import EXIT_BRIDGE_ERROR, EXIT_UNAUTHORIZED, SessionFatalError
from hue_xpl.service import BridgeService


EXIT_BUS_ERROR = 3

logger = logging.getLogger("hue_xpl")


async def serve(config: AppConfig) -> int:
    if not config.bridge_host:
        logger.error("HUE_BRIDGE_HOST is not set")
        return EXIT_BRIDGE_ERROR

    hub = EventHub()
    service = BridgeService.from_config(config, hub=hub)
    try:
        await service.start()
    except SessionFatalError as exc:
        if exc.exit_code == EXIT_UNAUTHORIZED:
            logger.error("The user '%s' is not authorized", config.username)
            logger.error("Push the bridge BUTTON, and launch: hue-xpl-pair --username '%s'", config.username)
        else:
            logger.error("%s", exc)
        await service.stop()
        return exc.exit_code
    except OSError as exc:
        logger.error("Can not open xPL socket: %s", exc)
        await service.stop()
        return EXIT_BUS_ERROR

    app.state.state = AppState(config=config, service=service, hub=hub)
    server = uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=config.port, log_level=config.log_level.lower())
    )
    service_task = asyncio.create_task(service.run())
    server_task = asyncio.create_task(server.serve())
    try:
        done, _ = await asyncio.wait({service_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
        if service_task in done:
            service_task.result()
        return 0
    except SessionFatalError as exc:
        logger.error("%s", exc)
        return exc.exit_code
    finally:
        server.should_exit = True
        service_task.cancel()
        for task in (service_task, server_task):
            try:
                await task
            except BaseException:
                pass


def main() -> None:
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(serve(config)))


if __name__ == "__main__":
    main()
