"""Tests for the Prometheus metrics layer."""

import asyncio
import urllib.request

from webrtc_receiver.metrics import Metrics


class TestMetrics:

    def test_counters(self):
        metrics = Metrics(port=0)
        metrics.inc_frames()
        metrics.inc_frames()
        metrics.inc_tracks("video")
        metrics.inc_chain_failures("audio")
        metrics.set_running(True)

        registry = metrics.registry
        assert registry.get_sample_value("receiver_frames_total") == 2
        assert registry.get_sample_value("receiver_tracks_total", {"kind": "video"}) == 1
        assert registry.get_sample_value("receiver_chain_failures_total", {"kind": "audio"}) == 1
        assert registry.get_sample_value("receiver_pipeline_running") == 1

    def test_instances_do_not_share_registries(self):
        first = Metrics(port=0)
        second = Metrics(port=0)
        first.inc_frames()
        assert second.registry.get_sample_value("receiver_frames_total") == 0

    async def test_http_server(self):
        metrics = Metrics(port=0)
        metrics.inc_frames()
        metrics.start_http()
        try:
            port = metrics.server.server_address[1]
            body = await asyncio.to_thread(
                lambda: urllib.request.urlopen(f"http://127.0.0.1:{port}/metrics", timeout=5).read().decode())
            assert "receiver_frames_total 1.0" in body
        finally:
            await metrics.stop_http()
        assert metrics.server is None
