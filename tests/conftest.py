"""
Pytest fixtures for the receiver tests
"""

import pytest

from webrtc_receiver import gstreamer
from webrtc_receiver.media_pipeline import MediaPipelineController, PipelineHandle
from webrtc_receiver.metrics import Metrics
from webrtc_receiver.shared_state import EventLog, FrameCell

from fake_gst import FakeGst


@pytest.fixture
def gst(monkeypatch) -> FakeGst:
    """
    Installs a fake Gst module in the lazy import cache.
    :return: The fake, for configuring failures and inspecting elements
    """
    fake = FakeGst()
    monkeypatch.setattr(gstreamer, "_Gst", fake)
    monkeypatch.setattr(gstreamer, "_gst_imported", True)
    return fake


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def frame_cell() -> FrameCell:
    return FrameCell()


@pytest.fixture
def pipeline(gst):
    return gst.Pipeline.new("test-pipeline")


@pytest.fixture
def handle(pipeline) -> PipelineHandle:
    return PipelineHandle(pipeline)


@pytest.fixture
def metrics() -> Metrics:
    return Metrics(port=0)


@pytest.fixture
def controller(gst, event_log, frame_cell, metrics):
    controller = MediaPipelineController(
        event_log=event_log,
        frame_cell=frame_cell,
        metrics=metrics,
        signaling_server="ws://signaling.test:8443",
        stun_server="stun://stun.test:3478",
    )
    yield controller
    controller.stop()
