# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import enum
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .gstreamer import MediaPipelineError, ensure_gst_imported, make_element
from .shared_state import VideoFrame

logger = logging.getLogger("track_router")
logger.setLevel(logging.INFO)

# Keep only the newest buffer, latency wins over completeness
LEAKY_QUEUE_PROPERTIES = {
    "max_size_buffers": 1,
    "max_size_bytes": 0,
    "max_size_time": 0,
}

CAPTURE_CAPS = "video/x-raw,format=RGBA"


class ChainBuildError(MediaPipelineError):
    pass


class TrackKind(enum.Enum):
    AUDIO = "audio"
    VIDEO = "video"

    @property
    def label(self) -> str:
        return self.value.capitalize()


def classify_pad(pad_name: str) -> Optional[TrackKind]:
    """Returns the media kind encoded in a source pad name, None for anything else"""
    lowered = pad_name.lower()
    for kind in TrackKind:
        if lowered.startswith(kind.value):
            return kind
    return None


@dataclass
class Track:
    kind: TrackKind
    pad_name: str
    pad: Any
    caps: Optional[str] = None
    probe_id: Optional[int] = None


class TrackRouter:
    """Binds tracks announced by the source to per-kind processing chains.

    pad-added fires on a streaming thread; the pad is blocked there and the
    track is queued for a dedicated router thread, which builds and links
    the chain before unblocking the pad. A chain that fails to build only
    affects its own track.
    """
    def __init__(self, handle, event_log, frame_cell, metrics=None):
        self._gst = ensure_gst_imported()
        self.handle = handle
        self.event_log = event_log
        self.frame_cell = frame_cell
        self.metrics = metrics
        self.chains: Dict[str, List[Any]] = {}
        self._queue: "queue.Queue[Optional[Track]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="track-router", daemon=True)
        self._thread.start()

    def stop(self):
        """Asks the router thread to exit once the tracks already queued are handled"""
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread = None

    def wait_idle(self):
        self._queue.join()

    def _run(self):
        while True:
            track = self._queue.get()
            try:
                if track is None:
                    return
                self.route(track)
            except Exception as e:
                logger.error(f"Unexpected error routing track {track.pad_name}: {e}", exc_info=True)
                self._log(f"{track.kind.label} chain failed for {track.pad_name}: {e}")
                if self.metrics:
                    self.metrics.inc_chain_failures(track.kind.value)
                self._discard(track)
            finally:
                self._queue.task_done()

    def _log(self, message: str):
        with self.handle.pinned() as pipeline:
            if pipeline is None:
                return
            self.event_log.append(message, mirror=False)
        self.event_log.mirror(message)

    def on_pad_added(self, src, pad):
        """pad-added handler of the source element, runs on a streaming thread"""
        Gst = self._gst
        pad_name = pad.get_name()
        kind = classify_pad(pad_name)
        if kind is None:
            logger.debug(f"ignoring pad {pad_name}")
            return

        caps = pad.get_current_caps()
        track = Track(kind=kind, pad_name=pad_name, pad=pad, caps=caps.to_string() if caps else None)
        track.probe_id = pad.add_probe(Gst.PadProbeType.BLOCK_DOWNSTREAM, self._hold_probe)
        logger.info(f"{kind.label} pad added: {pad_name} caps={track.caps}")
        self._log(f"{kind.label} track added: {pad_name}")
        if self.metrics:
            self.metrics.inc_tracks(kind.value)
        self._queue.put(track)

    def _hold_probe(self, pad, info):
        return self._gst.PadProbeReturn.OK

    def _drop_probe(self, pad, info):
        return self._gst.PadProbeReturn.DROP

    def route(self, track: Track) -> bool:
        """Builds and links the chain for one track, returns True when media can flow"""
        pipeline = self.handle.upgrade()
        if pipeline is None:
            logger.info(f"pipeline gone, not routing {track.pad_name}")
            return False

        try:
            elements = self._link_chain(pipeline, track)
        except ChainBuildError as e:
            logger.error(f"Failed to build {track.kind.value} chain for {track.pad_name}: {e}")
            self._log(f"{track.kind.label} chain failed for {track.pad_name}: {e}")
            if self.metrics:
                self.metrics.inc_chain_failures(track.kind.value)
            self._discard(track)
            return False

        self.chains[track.pad_name] = elements
        self._release(track)
        self._log(f"{track.kind.label} chain linked: {track.pad_name}")
        return True

    def _release(self, track: Track):
        if track.probe_id is not None:
            track.pad.remove_probe(track.probe_id)
            track.probe_id = None

    def _discard(self, track: Track):
        # Unlinked pads would return not-linked upstream, drop buffers instead
        Gst = self._gst
        try:
            track.pad.add_probe(Gst.PadProbeType.BUFFER | Gst.PadProbeType.BUFFER_LIST, self._drop_probe)
        finally:
            self._release(track)

    def _make_elements(self, track: Track) -> List[Any]:
        Gst = self._gst
        suffix = track.pad_name
        if track.kind is TrackKind.AUDIO:
            elements = [
                make_element(Gst, "audioconvert", f"audioconvert_{suffix}"),
                make_element(Gst, "audioresample", f"audioresample_{suffix}"),
                make_element(Gst, "queue", f"audio_queue_{suffix}", **LEAKY_QUEUE_PROPERTIES),
                make_element(Gst, "autoaudiosink", f"audiosink_{suffix}"),
            ]
            factories = ["audioconvert", "audioresample", "queue", "autoaudiosink"]
        else:
            elements = [
                make_element(Gst, "videoconvert", f"videoconvert_{suffix}"),
                make_element(Gst, "videoscale", f"videoscale_{suffix}"),
                make_element(Gst, "queue", f"video_queue_{suffix}", **LEAKY_QUEUE_PROPERTIES),
                make_element(Gst, "appsink", f"capture_{suffix}",
                             caps=Gst.caps_from_string(CAPTURE_CAPS),
                             emit_signals=True, max_buffers=1, drop=True),
            ]
            factories = ["videoconvert", "videoscale", "queue", "appsink"]

        missing = [factory for factory, element in zip(factories, elements) if element is None]
        if missing:
            raise ChainBuildError(f"could not create {', '.join(missing)}")

        if track.kind is TrackKind.VIDEO:
            elements[-1].connect("new-sample", self._on_new_sample)
        return elements

    def _link_chain(self, pipeline, track: Track) -> List[Any]:
        Gst = self._gst
        elements = []
        added = []
        try:
            elements = self._make_elements(track)
            for element in elements:
                if not pipeline.add(element):
                    raise ChainBuildError(f"failed to add {element.get_name()} to the pipeline")
                added.append(element)

            sink_pad = elements[0].get_static_pad("sink")
            if sink_pad is None:
                raise ChainBuildError(f"{elements[0].get_name()} has no sink pad")
            ret = track.pad.link(sink_pad)
            if ret != Gst.PadLinkReturn.OK:
                raise ChainBuildError(f"failed to link {track.pad_name} -> {elements[0].get_name()}: {ret}")

            for upstream, downstream in zip(elements, elements[1:]):
                if not upstream.link(downstream):
                    raise ChainBuildError("failed to link {} -> {}".format(upstream.get_name(), downstream.get_name()))

            # Sink first, an upstream element that starts playing before its
            # downstream peer would push into a stalled element
            for element in reversed(elements):
                if not element.sync_state_with_parent():
                    raise ChainBuildError(f"failed to sync state of {element.get_name()}")
        except ChainBuildError:
            self._unwind(pipeline, track, added)
            raise
        except Exception as e:
            self._unwind(pipeline, track, added)
            raise ChainBuildError(str(e)) from e
        return elements

    def _unwind(self, pipeline, track: Track, added: List[Any]):
        Gst = self._gst
        peer = track.pad.get_peer()
        if peer is not None:
            track.pad.unlink(peer)
        for element in reversed(added):
            element.set_state(Gst.State.NULL)
            pipeline.remove(element)

    def _on_new_sample(self, sink):
        """new-sample handler of the capture appsink, runs on a streaming thread"""
        Gst = self._gst
        sample = sink.emit("pull-sample")
        if sample is None:
            return Gst.FlowReturn.EOS

        buffer = sample.get_buffer()
        caps = sample.get_caps()
        if buffer is None or caps is None:
            logger.warning("capture sample missing buffer or caps")
            return Gst.FlowReturn.ERROR

        structure = caps.get_structure(0)
        has_width, width = structure.get_int("width")
        has_height, height = structure.get_int("height")
        if not (has_width and has_height):
            logger.warning(f"capture caps without frame size: {caps.to_string()}")
            return Gst.FlowReturn.ERROR

        success, map_info = buffer.map(Gst.MapFlags.READ)
        if not success:
            logger.error("Failed to map video buffer")
            return Gst.FlowReturn.ERROR
        try:
            data = bytes(map_info.data)
        finally:
            buffer.unmap(map_info)

        size = width * height * 4
        if len(data) < size:
            logger.warning(f"short RGBA buffer for {width}x{height}: {len(data)} bytes")
            return Gst.FlowReturn.OK
        frame = VideoFrame(width, height, data[:size])

        with self.handle.pinned() as pipeline:
            if pipeline is None:
                return Gst.FlowReturn.FLUSHING
            self.frame_cell.put(frame)
        if self.metrics:
            self.metrics.inc_frames()
        return Gst.FlowReturn.OK
