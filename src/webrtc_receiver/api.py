# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import asyncio
import logging

from aiohttp import web

from .media_pipeline import MediaPipelineController

logger = logging.getLogger("api")
logger.setLevel(logging.INFO)

CONTROLLER_KEY = web.AppKey("controller", MediaPipelineController)

INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>WebRTC low latency receiver</title>
<style>
  body { font-family: sans-serif; margin: 1em; }
  #log { height: 200px; overflow-y: auto; border: 1px solid #ccc; font-family: monospace; white-space: pre; }
  #video { background: #222; max-width: 100%; }
</style>
</head>
<body>
<h2>WebRTC low latency receiver</h2>
<button id="toggle">Start</button> <span id="state">Stopped</span>
<h3>Video</h3>
<canvas id="video" width="640" height="360"></canvas>
<div id="waiting">Waiting for video frames...</div>
<h3>Log</h3>
<div id="log"></div>
<script>
let running = false;
const canvas = document.getElementById("video");
const ctx = canvas.getContext("2d");

document.getElementById("toggle").onclick = async () => {
  const res = await fetch(running ? "/stop" : "/start", {method: "POST"});
  if (!res.ok) {
    const body = await res.json();
    alert(body.error);
  }
};

async function tick() {
  try {
    const status = await (await fetch("/status")).json();
    running = status.running;
    document.getElementById("toggle").textContent = running ? "Stop" : "Start";
    document.getElementById("state").textContent = running ? "Running" : "Stopped";

    const frame = await fetch("/frame");
    if (frame.status === 200) {
      const width = parseInt(frame.headers.get("X-Frame-Width"));
      const height = parseInt(frame.headers.get("X-Frame-Height"));
      const pixels = new Uint8ClampedArray(await frame.arrayBuffer());
      canvas.width = width;
      canvas.height = height;
      ctx.putImageData(new ImageData(pixels, width, height), 0, 0);
      document.getElementById("waiting").style.display = "none";
    } else {
      document.getElementById("waiting").style.display = "block";
    }

    const log = await (await fetch("/log")).json();
    const pane = document.getElementById("log");
    pane.textContent = log.entries.join("\\n");
    pane.scrollTop = pane.scrollHeight;
  } finally {
    requestAnimationFrame(tick);
  }
}
requestAnimationFrame(tick);
</script>
</body>
</html>
"""


def create_app(controller: MediaPipelineController) -> web.Application:
    """Builds the presentation API around a pipeline controller"""
    app = web.Application()
    app[CONTROLLER_KEY] = controller

    async def handle_index(request):
        return web.Response(text=INDEX_HTML, content_type="text/html")

    async def handle_status(request):
        return web.json_response({"running": request.app[CONTROLLER_KEY].is_running()})

    async def handle_start(request):
        logger.info("Received request to start the pipeline")
        success, message = await asyncio.to_thread(request.app[CONTROLLER_KEY].request_start)
        if success:
            return web.json_response({"message": message})
        else:
            return web.json_response({"error": message}, status=500)

    async def handle_stop(request):
        logger.info("Received request to stop the pipeline")
        _, message = await asyncio.to_thread(request.app[CONTROLLER_KEY].request_stop)
        return web.json_response({"message": message})

    async def handle_log(request):
        entries = await asyncio.to_thread(request.app[CONTROLLER_KEY].poll_log)
        return web.json_response({"entries": entries})

    async def handle_frame(request):
        # poll_frame may wait up to POLL_LOCK_TIMEOUT for a streaming thread
        frame = await asyncio.to_thread(request.app[CONTROLLER_KEY].poll_frame)
        if frame is None:
            return web.Response(status=204)
        return web.Response(
            body=frame.pixels,
            content_type="application/octet-stream",
            headers={
                "X-Frame-Width": str(frame.width),
                "X-Frame-Height": str(frame.height),
            },
        )

    app.add_routes([
        web.get('/', handle_index),
        web.get('/status', handle_status),
        web.post('/start', handle_start),
        web.post('/stop', handle_stop),
        web.get('/log', handle_log),
        web.get('/frame', handle_frame),
    ])
    return app
