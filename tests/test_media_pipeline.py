"""Tests for the pipeline controller, the pipeline handle and bus supervision."""

import threading
import time

import pytest

from webrtc_receiver import shared_state
from webrtc_receiver.media_pipeline import (
    BusSupervisor,
    MediaPipelineController,
    PipelineBuildError,
    PipelineHandle,
)

from fake_gst import Element, FakeGst, State, rgba_sample


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def error_entries(event_log):
    return [e for e in event_log.snapshot() if e.startswith("Error")]


class TestPipelineHandle:
    """Tests for PipelineHandle."""

    def test_upgrade_until_invalidated(self):
        pipeline = object()
        handle = PipelineHandle(pipeline)
        assert handle.upgrade() is pipeline
        assert handle.is_valid

        assert handle.invalidate() is pipeline
        assert handle.upgrade() is None
        assert not handle.is_valid
        assert handle.invalidate() is None

    def test_invalidate_waits_for_pinned_block(self):
        handle = PipelineHandle(object())
        entered = threading.Event()
        release = threading.Event()
        invalidated = threading.Event()

        def writer():
            with handle.pinned() as pipeline:
                assert pipeline is not None
                entered.set()
                release.wait(2)

        thread = threading.Thread(target=writer)
        thread.start()
        entered.wait(2)
        stopper = threading.Thread(target=lambda: (handle.invalidate(), invalidated.set()))
        stopper.start()
        assert not invalidated.wait(0.1)
        release.set()
        thread.join()
        stopper.join()
        assert invalidated.is_set()


class TestStartStop:
    """Tests for starting and stopping the controller."""

    def test_start(self, gst, controller, event_log, metrics):
        controller.start()

        assert controller.is_running()
        assert "Pipeline started" in event_log.snapshot()
        assert len(gst.pipelines) == 1
        pipeline = gst.pipelines[0]
        assert pipeline.state == State.PLAYING
        assert metrics.registry.get_sample_value("receiver_pipeline_running") == 1

    def test_source_configuration(self, gst, controller):
        controller.start()

        webrtcsrc = gst.elements["webrtcsrc"]
        assert webrtcsrc.parent is gst.pipelines[0]
        assert webrtcsrc.properties["connect-to-first-producer"] is True
        assert webrtcsrc.properties["enable-control-data-channel"] is True
        assert webrtcsrc.properties["video-codecs"] == "<H264, VP8>"
        assert webrtcsrc.properties["audio-codecs"] == "<OPUS>"
        assert webrtcsrc.properties["stun-server"] == "stun://stun.test:3478"
        assert webrtcsrc.properties["signaller"].properties["uri"] == "ws://signaling.test:8443"

    def test_start_when_running_is_noop(self, gst, controller, event_log):
        controller.start()
        controller.start()

        assert len(gst.pipelines) == 1
        assert event_log.snapshot().count("Pipeline started") == 1

    def test_stop_is_idempotent(self, gst, controller, event_log, metrics):
        controller.start()
        pipeline = gst.pipelines[0]

        controller.stop()
        state_after_one = (controller.is_running(), event_log.snapshot(), pipeline.state)
        controller.stop()
        state_after_two = (controller.is_running(), event_log.snapshot(), pipeline.state)

        assert state_after_one == state_after_two
        assert controller.is_running() is False
        assert pipeline.state == State.NULL
        assert event_log.snapshot().count("Pipeline stopped") == 1
        assert metrics.registry.get_sample_value("receiver_pipeline_running") == 0

    def test_stop_on_idle_controller(self, gst, controller, event_log):
        controller.stop()
        assert not controller.is_running()
        assert event_log.snapshot() == []

    def test_restart_builds_fresh_pipeline(self, gst, controller):
        controller.start()
        controller.stop()
        controller.start()

        assert len(gst.pipelines) == 2
        assert gst.pipelines[0].state == State.NULL
        assert gst.pipelines[1].state == State.PLAYING

    def test_supervisor_exits_after_stop(self, gst, controller, event_log):
        controller.start()
        supervisor = controller.supervisor
        pipeline = gst.pipelines[0]

        controller.stop()
        supervisor.join(timeout=2)
        assert not supervisor.is_alive()

        pipeline.bus.post(FakeGst.error_message("late failure"))
        time.sleep(0.2)
        assert error_entries(event_log) == []


class TestStartFailures:
    """Tests for PipelineBuildError handling."""

    def test_missing_source_element(self, gst, controller, event_log):
        gst.missing_factories.add("webrtcsrc")

        with pytest.raises(PipelineBuildError, match="webrtcsrc"):
            controller.start()
        assert not controller.is_running()
        assert event_log.snapshot() == ["Failed to start pipeline: Failed to create webrtcsrc element"]

    def test_missing_plugins(self, gst, controller):
        gst.missing_plugins.update({"rswebrtc", "videoconvertscale", "videoscale"})

        with pytest.raises(PipelineBuildError, match="Missing required plugins: rswebrtc, videoscale"):
            controller.start()
        assert gst.pipelines == []

    def test_state_change_failure_discards_graph(self, gst, controller, event_log):
        gst.fail_playing = True

        with pytest.raises(PipelineBuildError, match="PLAYING"):
            controller.start()
        assert not controller.is_running()
        assert gst.pipelines[0].state == State.NULL
        assert controller.supervisor is None
        assert controller.router is None

    def test_request_start_reports_inline(self, gst, controller):
        gst.missing_factories.add("webrtcsrc")
        assert controller.request_start() == (False, "Failed to create webrtcsrc element")

        gst.missing_factories.clear()
        assert controller.request_start() == (True, "Pipeline running")
        assert controller.request_stop() == (True, "Pipeline stopped")
        assert not controller.is_running()


class TestBusSupervision:
    """Tests for bus message handling on a running controller."""

    def test_error_stops_pipeline_without_explicit_stop(self, gst, controller, event_log, metrics):
        controller.start()
        supervisor = controller.supervisor
        pipeline = gst.pipelines[0]

        pipeline.bus.post(FakeGst.error_message("Could not connect to signaling server"))
        supervisor.join(timeout=2)

        assert not supervisor.is_alive()
        assert controller.is_running() is False
        assert error_entries(event_log) == ["Error: Could not connect to signaling server"]
        assert pipeline.state == State.NULL
        assert metrics.registry.get_sample_value("receiver_bus_errors_total") == 1
        assert metrics.registry.get_sample_value("receiver_pipeline_running") == 0

    def test_start_after_error(self, gst, controller):
        controller.start()
        supervisor = controller.supervisor
        gst.pipelines[0].bus.post(FakeGst.error_message("boom"))
        supervisor.join(timeout=2)

        controller.start()
        assert controller.is_running()
        assert len(gst.pipelines) == 2

    def test_eos_ends_supervision_but_keeps_running(self, gst, controller, event_log):
        controller.start()
        supervisor = controller.supervisor

        gst.pipelines[0].bus.post(FakeGst.eos_message())
        supervisor.join(timeout=2)

        assert not supervisor.is_alive()
        assert controller.is_running()
        assert event_log.snapshot()[-1] == "End of stream"

    def test_latency_is_recalculated_without_logging(self, gst, controller, event_log):
        controller.start()
        supervisor = controller.supervisor
        pipeline = gst.pipelines[0]
        before = event_log.snapshot()

        pipeline.bus.post(FakeGst.latency_message())
        pipeline.bus.post(FakeGst.state_changed_message())
        pipeline.bus.post(FakeGst.eos_message())
        supervisor.join(timeout=2)

        assert pipeline.latency_recalculations == 1
        assert event_log.snapshot() == before + ["End of stream"]


class TestBusSupervisorWithInvalidHandle:
    """The supervisor skips actions once the handle is gone."""

    def test_error_with_invalid_handle(self, gst, pipeline, event_log):
        handle = PipelineHandle(pipeline)
        supervisor = BusSupervisor(handle, pipeline.get_bus(), event_log)
        calls = []
        supervisor.on_error = lambda h, message: calls.append(message)
        handle.invalidate()

        assert supervisor.handle_message(FakeGst.error_message("boom")) is False
        assert event_log.snapshot() == []
        assert pipeline.state_history == []
        assert calls == []

    def test_latency_with_invalid_handle(self, gst, pipeline, event_log):
        handle = PipelineHandle(pipeline)
        supervisor = BusSupervisor(handle, pipeline.get_bus(), event_log)
        handle.invalidate()

        assert supervisor.handle_message(FakeGst.latency_message()) is True
        assert pipeline.latency_recalculations == 0

    def test_other_messages_ignored(self, gst, pipeline, event_log):
        supervisor = BusSupervisor(PipelineHandle(pipeline), pipeline.get_bus(), event_log)
        assert supervisor.handle_message(FakeGst.state_changed_message()) is True
        assert event_log.snapshot() == []

    def test_error_mirrored_outside_pinned_block(self, gst, pipeline, event_log, monkeypatch):
        handle = PipelineHandle(pipeline)
        supervisor = BusSupervisor(handle, pipeline.get_bus(), event_log)
        supervisor.on_error = lambda h, message: None
        mirrored = []
        monkeypatch.setattr(shared_state.logger, "info",
                            lambda message: mirrored.append((message, handle._lock.locked())))

        supervisor.handle_message(FakeGst.error_message("boom"))
        assert mirrored == [("Error: boom", False)]


class TestEndToEnd:
    """Signaller events and tracks flowing through a started controller."""

    def test_transport_ready_through_signaller(self, gst, controller, event_log):
        controller.start()
        signaller = gst.elements["webrtcsrc"].properties["signaller"]
        webrtcbin = Element(gst, "webrtcbin", "webrtcbin0")

        signaller.emit("webrtcbin-ready", "peer-1", webrtcbin)

        assert webrtcbin.properties["latency"] == 20
        assert event_log.snapshot()[-1] == "Transport ready, latency set to 20 ms"

    def test_tracks_to_frame(self, gst, controller):
        controller.start()
        webrtcsrc = gst.elements["webrtcsrc"]

        webrtcsrc.add_track_pad("video_0_0")
        webrtcsrc.add_track_pad("audio_0_1")
        webrtcsrc.add_track_pad("data_0")
        controller.router.wait_idle()

        assert set(controller.router.chains) == {"video_0_0", "audio_0_1"}
        gst.elements["capture_video_0_0"].deliver_sample(rgba_sample(3, 2, fill=5))
        frame = controller.poll_frame()
        assert (frame.width, frame.height, frame.pixels) == (3, 2, bytes([5]) * 24)

    def test_no_frames_after_stop(self, gst, controller):
        controller.start()
        gst.elements["webrtcsrc"].add_track_pad("video_0_0")
        controller.router.wait_idle()
        sink = gst.elements["capture_video_0_0"]

        controller.stop()
        sink.deliver_sample(rgba_sample(2, 2))
        assert controller.poll_frame() is None

    def test_render_surface_defaults(self, gst):
        controller = MediaPipelineController()
        assert controller.poll_frame() is None
        assert controller.poll_log() == []
        assert controller.is_running() is False
