# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import contextlib
import logging
import threading
from typing import Optional, Tuple

from .gstreamer import MediaPipelineError, check_plugins, ensure_gst_imported, make_element
from .shared_state import EventLog, FrameCell, VideoFrame
from .signaling_monitor import SignalingMonitor
from .track_router import TrackRouter

logger = logging.getLogger("media_pipeline")
logger.setLevel(logging.INFO)

# Source element configuration, fixed for this receiver
CONNECT_TO_FIRST_PRODUCER = True
VIDEO_CODECS = "<H264, VP8>"
AUDIO_CODECS = "<OPUS>"
ENABLE_CONTROL_DATA_CHANNEL = True

# How long the bus supervisor waits for a message before re-checking the handle, in seconds
BUS_POLL_INTERVAL = 0.1


class PipelineBuildError(MediaPipelineError):
    pass


class PipelineHandle:
    """Shared reference to a running pipeline that the controller can revoke.

    Threads that outlive stop() hold this instead of the pipeline itself
    and check it right before every use.
    """
    def __init__(self, pipeline):
        self._lock = threading.Lock()
        self._pipeline = pipeline

    def upgrade(self):
        """Returns the pipeline, or None once the handle has been invalidated"""
        with self._lock:
            return self._pipeline

    @property
    def is_valid(self) -> bool:
        return self.upgrade() is not None

    def invalidate(self):
        with self._lock:
            pipeline, self._pipeline = self._pipeline, None
        return pipeline

    @contextlib.contextmanager
    def pinned(self):
        """Keeps the handle from being invalidated while the block runs.

        Only short, non-blocking work such as a log append belongs here.
        """
        with self._lock:
            yield self._pipeline


class BusSupervisor:
    """Watches the bus of one pipeline on a dedicated thread"""
    def __init__(self, handle: PipelineHandle, bus, event_log: EventLog, metrics=None):
        self._gst = ensure_gst_imported()
        self.handle = handle
        self.bus = bus
        self.event_log = event_log
        self.metrics = metrics
        self._thread: Optional[threading.Thread] = None

        self.on_error = lambda handle, message: logger.warning('unhandled on_error callback')

    def start(self):
        self._thread = threading.Thread(target=self._run, name="bus-supervisor", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        Gst = self._gst
        types = Gst.MessageType.EOS | Gst.MessageType.ERROR | Gst.MessageType.LATENCY
        timeout = int(BUS_POLL_INTERVAL * Gst.SECOND)
        while self.handle.is_valid:
            message = self.bus.timed_pop_filtered(timeout, types)
            if message is None:
                continue
            if not self.handle_message(message):
                break
        logger.info("stopping bus supervision")

    def _log(self, message: str) -> bool:
        with self.handle.pinned() as pipeline:
            if pipeline is None:
                return False
            self.event_log.append(message, mirror=False)
        self.event_log.mirror(message)
        return True

    def handle_message(self, message) -> bool:
        """Reacts to one bus message, returns False when supervision should end"""
        Gst = self._gst
        t = message.type
        if t == Gst.MessageType.EOS:
            logger.info("End-of-stream")
            self._log("End of stream")
            return False
        elif t == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            logger.error(f"Pipeline error: {err.message}: {debug}")
            if not self._log(f"Error: {err.message}"):
                return False
            if self.metrics:
                self.metrics.inc_bus_errors()
            pipeline = self.handle.upgrade()
            if pipeline is not None:
                pipeline.set_state(Gst.State.NULL)
            self.on_error(self.handle, err.message)
            return False
        elif t == Gst.MessageType.LATENCY:
            pipeline = self.handle.upgrade()
            if pipeline is not None:
                pipeline.recalculate_latency()
        return True


class MediaPipelineController:
    """Owns the receive pipeline and exposes the render tick surface.

    All methods are safe to call from any thread.
    """
    def __init__(
        self,
        event_log: Optional[EventLog] = None,
        frame_cell: Optional[FrameCell] = None,
        metrics=None,
        signaling_server: Optional[str] = None,
        stun_server: Optional[str] = None
    ):
        self.event_log = event_log if event_log is not None else EventLog()
        self.frame_cell = frame_cell if frame_cell is not None else FrameCell()
        self.metrics = metrics
        self.signaling_server = signaling_server
        self.stun_server = stun_server

        self._lock = threading.Lock()
        self._handle: Optional[PipelineHandle] = None
        self._router: Optional[TrackRouter] = None
        self._supervisor: Optional[BusSupervisor] = None
        self._monitor: Optional[SignalingMonitor] = None

    # --- Render tick surface ---
    def is_running(self) -> bool:
        return self._handle is not None

    def poll_frame(self) -> Optional[VideoFrame]:
        return self.frame_cell.poll()

    def poll_log(self):
        return self.event_log.snapshot()

    def request_start(self) -> Tuple[bool, str]:
        try:
            self.start()
        except PipelineBuildError as e:
            return False, str(e)
        return True, "Pipeline running"

    def request_stop(self) -> Tuple[bool, str]:
        self.stop()
        return True, "Pipeline stopped"

    # --- Core Pipeline Management ---
    @property
    def router(self) -> Optional[TrackRouter]:
        return self._router

    @property
    def supervisor(self) -> Optional[BusSupervisor]:
        return self._supervisor

    def start(self):
        """Builds the receive pipeline and sets it to PLAYING, no-op when already running"""
        with self._lock:
            if self._handle is not None:
                return
            logger.info("Starting media pipeline")
            try:
                self._start_locked()
            except PipelineBuildError as e:
                logger.error(f"Failed to start pipeline: {e}")
                self.event_log.append(f"Failed to start pipeline: {e}")
                raise
            if self.metrics:
                self.metrics.set_running(True)
            self.event_log.append("Pipeline started")

    def _build_source(self, Gst):
        webrtcsrc = make_element(Gst, "webrtcsrc", "webrtcsrc",
                                 connect_to_first_producer=CONNECT_TO_FIRST_PRODUCER,
                                 enable_control_data_channel=ENABLE_CONTROL_DATA_CHANNEL)
        if webrtcsrc is None:
            raise PipelineBuildError("Failed to create webrtcsrc element")
        Gst.util_set_object_arg(webrtcsrc, "video-codecs", VIDEO_CODECS)
        Gst.util_set_object_arg(webrtcsrc, "audio-codecs", AUDIO_CODECS)
        if self.stun_server:
            webrtcsrc.set_property("stun-server", self.stun_server)
        return webrtcsrc

    def _start_locked(self):
        try:
            Gst = ensure_gst_imported()
        except MediaPipelineError as e:
            raise PipelineBuildError(str(e)) from e

        missing = check_plugins(Gst)
        if missing:
            raise PipelineBuildError(f"Missing required plugins: {', '.join(missing)}")

        pipeline = Gst.Pipeline.new("webrtc-receiver")
        if not pipeline:
            raise PipelineBuildError("Failed to create media pipeline")

        handle = PipelineHandle(pipeline)
        router = None
        try:
            webrtcsrc = self._build_source(Gst)
            if not pipeline.add(webrtcsrc):
                raise PipelineBuildError("Failed to add webrtcsrc to the pipeline")

            signaller = webrtcsrc.get_property("signaller")
            if signaller is None:
                raise PipelineBuildError("webrtcsrc has no signaller")
            if self.signaling_server:
                signaller.set_property("uri", self.signaling_server)

            monitor = SignalingMonitor(handle, self.event_log)
            monitor.attach(signaller)

            router = TrackRouter(handle, self.event_log, self.frame_cell, self.metrics)
            router.start()
            webrtcsrc.connect("pad-added", router.on_pad_added)

            supervisor = BusSupervisor(handle, pipeline.get_bus(), self.event_log, self.metrics)
            supervisor.on_error = self._on_pipeline_error

            res = pipeline.set_state(Gst.State.PLAYING)
            if res == Gst.StateChangeReturn.FAILURE:
                raise PipelineBuildError("Failed to transition pipeline to PLAYING")
        except Exception as e:
            handle.invalidate()
            if router is not None:
                router.stop()
            pipeline.set_state(Gst.State.NULL)
            if isinstance(e, PipelineBuildError):
                raise
            raise PipelineBuildError(str(e)) from e

        supervisor.start()
        self._handle = handle
        self._router = router
        self._supervisor = supervisor
        self._monitor = monitor

    def _release_locked(self):
        """Drops the handle and everything bound to it, returns the revoked pipeline"""
        handle, self._handle = self._handle, None
        router, self._router = self._router, None
        self._supervisor = None
        self._monitor = None
        pipeline = handle.invalidate()
        if router is not None:
            router.stop()
        if self.metrics:
            self.metrics.set_running(False)
        return pipeline

    def stop(self):
        """Sets the pipeline to NULL and releases it, no-op when not running"""
        with self._lock:
            if self._handle is None:
                return
            logger.info("Stopping pipeline")
            pipeline = self._release_locked()
            self.event_log.append("Pipeline stopped")

        if pipeline is not None:
            Gst = ensure_gst_imported()
            logger.info("Setting pipeline state to NULL")
            pipeline.set_state(Gst.State.NULL)
            logger.info("Pipeline stopped")

    def _on_pipeline_error(self, handle: PipelineHandle, message: str):
        # Called by the bus supervisor after it set the pipeline to NULL
        with self._lock:
            if self._handle is not handle:
                return
            logger.info(f"Pipeline stopped after error: {message}")
            self._release_locked()
