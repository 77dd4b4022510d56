# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger("signaling_monitor")
logger.setLevel(logging.INFO)

# Jitterbuffer latency applied to the transport once it is ready, in milliseconds
TARGET_LATENCY_MS = 20


@dataclass(frozen=True)
class ProducerAdded:
    producer_id: str
    meta: Optional[str] = None


@dataclass(frozen=True)
class SessionRequested:
    peer_id: str
    session_id: str


@dataclass(frozen=True)
class SessionStarted:
    peer_id: str
    session_id: str


@dataclass(frozen=True)
class TransportReady:
    transport: Any
    peer_id: Optional[str] = None


class SignalingMonitor:
    """Reacts to session lifecycle events emitted by the webrtcsrc signaller.

    Signal handlers run on the signaller's own thread, every reaction is a
    log append or a property write and never waits on anything else.
    """
    def __init__(self, handle, event_log):
        self.handle = handle
        self.event_log = event_log
        self._reactions = {
            ProducerAdded: self._on_producer_added,
            SessionRequested: self._on_session_requested,
            SessionStarted: self._on_session_started,
            TransportReady: self._on_transport_ready,
        }

    def attach(self, signaller):
        """Subscribes to the signaller's lifecycle signals"""
        signaller.connect("producer-added", self._producer_added_cb)
        signaller.connect("session-requested", self._session_requested_cb)
        signaller.connect("session-started", self._session_started_cb)
        signaller.connect("webrtcbin-ready", self._webrtcbin_ready_cb)

    def handle_event(self, event):
        reaction = self._reactions.get(type(event))
        if reaction is None:
            logger.warning(f"unhandled session event: {event!r}")
            return
        reaction(event)

    def _log(self, message: str):
        with self.handle.pinned() as pipeline:
            if pipeline is None:
                return
            self.event_log.append(message, mirror=False)
        self.event_log.mirror(message)

    def _on_producer_added(self, event: ProducerAdded):
        self._log(f"Producer added: producer_id={event.producer_id}, meta={event.meta}")

    def _on_session_requested(self, event: SessionRequested):
        self._log(f"Session requested: peer_id={event.peer_id}, session_id={event.session_id}")

    def _on_session_started(self, event: SessionStarted):
        self._log(f"Session started: peer_id={event.peer_id}, session_id={event.session_id}")

    def _on_transport_ready(self, event: TransportReady):
        event.transport.set_property("latency", TARGET_LATENCY_MS)
        self._log(f"Transport ready, latency set to {TARGET_LATENCY_MS} ms")

    # GObject signal adapters. Argument order follows the signaller's signal
    # signatures, the trailing arguments vary between plugin releases.

    def _producer_added_cb(self, signaller, producer_id, meta=None, *args):
        self._dispatch(ProducerAdded(producer_id, meta.to_string() if meta is not None else None))

    def _session_requested_cb(self, signaller, session_id, peer_id, *args):
        self._dispatch(SessionRequested(peer_id=peer_id, session_id=session_id))

    def _session_started_cb(self, signaller, session_id, peer_id, *args):
        self._dispatch(SessionStarted(peer_id=peer_id, session_id=session_id))

    def _webrtcbin_ready_cb(self, signaller, peer_id, webrtcbin, *args):
        self._dispatch(TransportReady(transport=webrtcbin, peer_id=peer_id))

    def _dispatch(self, event):
        try:
            self.handle_event(event)
        except Exception as e:
            logger.error(f"Failed to handle session event {type(event).__name__}: {e}", exc_info=True)
            self._log(f"Failed to handle {type(event).__name__}: {e}")
