# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from .api import create_app
from .media_pipeline import MediaPipelineController
from .metrics import Metrics
from .settings import AppSettings, load_settings
from .shared_state import EventLog, FrameCell

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")


class ReceiverApp:
    def __init__(self, settings: AppSettings):
        self.settings = settings
        self.shutdown_event = asyncio.Event()
        self.event_log = EventLog()
        self.frame_cell = FrameCell()
        self.metrics: Optional[Metrics] = None
        self.controller: Optional[MediaPipelineController] = None
        self.runner: Optional[web.AppRunner] = None

    def handle_signal(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, initiating shutdown")
        self.shutdown_event.set()

    async def start_components(self) -> None:
        if self.settings.enable_metrics[0]:
            self.metrics = Metrics(self.settings.metrics_port)
            self.metrics.start_http()

        self.controller = MediaPipelineController(
            event_log=self.event_log,
            frame_cell=self.frame_cell,
            metrics=self.metrics,
            signaling_server=self.settings.signaling_server or None,
            stun_server=self.settings.stun_server or None,
        )

        self.runner = web.AppRunner(create_app(self.controller))
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.settings.host, self.settings.port)
        await site.start()
        logger.info(f"Presentation API running at http://{self.settings.host}:{self.settings.port}")

        if self.settings.autostart[0]:
            success, message = await asyncio.to_thread(self.controller.request_start)
            if not success:
                logger.error(f"Autostart failed: {message}")

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        logger.info("Starting shutdown sequence")

        async def _await_with_timeout(coro, name: str, timeout: float = 3.0):
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timeout while waiting for {name} to stop (after {timeout}s)")
            except Exception as e:
                logger.exception(f"Error while stopping {name}: {e}")
            return None

        if self.controller:
            await _await_with_timeout(asyncio.to_thread(self.controller.stop), "media_pipeline", 3.0)
        if self.runner:
            await _await_with_timeout(self.runner.cleanup(), "api_server", 3.0)
        if self.metrics:
            await _await_with_timeout(self.metrics.stop_http(), "metrics", 2.0)
        logger.info("Shutdown complete")

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.handle_signal, signum, None)
        try:
            await self.start_components()
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Receiver cancelled")
        except Exception as e:
            logger.critical(f"Fatal error: {e}", exc_info=True)
            sys.exit(1)
        finally:
            await self.shutdown()


def main():
    settings = load_settings()
    try:
        asyncio.run(ReceiverApp(settings).run())
    except KeyboardInterrupt:
        logger.info("Receiver interrupted, exiting...")


if __name__ == "__main__":
    main()
