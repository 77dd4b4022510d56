# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import logging
from http.server import HTTPServer
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, MetricsHandler

logger_metrics = logging.getLogger("metrics")
logger_metrics.setLevel(logging.INFO)


class Metrics:
    def __init__(self, port: int = 8000):
        self.port = port
        self.registry = CollectorRegistry()
        self.server: Optional[HTTPServer] = None
        self._task: Optional[asyncio.Task] = None

        self.pipeline_running = Gauge('receiver_pipeline_running', '1 while the receive pipeline is running',
                                      registry=self.registry)
        self.frames = Counter('receiver_frames', 'Video frames written to the frame cell',
                              registry=self.registry)
        self.tracks = Counter('receiver_tracks', 'Media tracks announced by the source', ['kind'],
                              registry=self.registry)
        self.chain_failures = Counter('receiver_chain_failures', 'Per-track chains that failed to build', ['kind'],
                                      registry=self.registry)
        self.bus_errors = Counter('receiver_bus_errors', 'Error messages received on the pipeline bus',
                                  registry=self.registry)

    def set_running(self, running: bool):
        self.pipeline_running.set(1 if running else 0)

    def inc_frames(self):
        self.frames.inc()

    def inc_tracks(self, kind: str):
        self.tracks.labels(kind=kind).inc()

    def inc_chain_failures(self, kind: str):
        self.chain_failures.labels(kind=kind).inc()

    def inc_bus_errors(self):
        self.bus_errors.inc()

    def start_http(self):
        if self._task is not None:
            logger_metrics.warning("Metrics server is already running")
            return
        self.server = HTTPServer(('127.0.0.1', self.port), MetricsHandler.factory(self.registry))
        self._task = asyncio.create_task(asyncio.to_thread(self.server.serve_forever))
        logger_metrics.info(f"Metrics server started on port {self.port}")

    async def stop_http(self):
        if self._task is None:
            logger_metrics.warning("Metrics server is not running, might have already been stopped")
            return
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if not self._task.done():
            await self._task
        self._task = None
        logger_metrics.info("Metrics server stopped")
