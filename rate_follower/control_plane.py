"""ZeroMQ REQ/REP control plane for the rate follower.

Commands (JSON):
- ``{"cmd": "STATUS"}`` -> current status
- ``{"cmd": "TRACK", "track_id": "..."}`` -> track-change notification
  (``null`` track_id means playback stopped)
- ``{"cmd": "RECHECK"}`` -> request one evaluation

Now-playing adapters run as separate processes and push TRACK here.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Hashable, Optional

import zmq

from .status import RateStatus

logger = logging.getLogger(__name__)


class ControlPlaneServer:
    """REQ/REP の REP 側. 受信待ちは Poller で行い stop() を待たせない."""

    def __init__(
        self,
        *,
        endpoint: str,
        status_provider: Callable[[], RateStatus],
        on_track_change: Optional[Callable[[Optional[Hashable]], None]] = None,
        on_recheck: Optional[Callable[[], None]] = None,
        poll_ms: int = 500,
    ) -> None:
        self._endpoint = endpoint
        self._status_provider = status_provider
        self._on_track_change = on_track_change
        self._on_recheck = on_recheck
        self._poll_ms = max(50, int(poll_ms))
        self._ctx: zmq.Context | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        ctx = zmq.Context()
        sock = ctx.socket(zmq.REP)
        sock.setsockopt(zmq.LINGER, 0)
        try:
            sock.bind(self._endpoint)
        except zmq.ZMQError:
            ctx.destroy(linger=0)
            raise
        self._ctx = ctx
        self._thread = threading.Thread(
            target=self._serve, args=(sock,), name="rate_control_rep", daemon=True
        )
        self._thread.start()
        logger.info("control plane listening at %s", self._endpoint)

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=self._poll_ms / 1000 + 1)
        ctx, self._ctx = self._ctx, None
        if ctx is not None:
            # closes the REP socket as well
            ctx.destroy(linger=0)

    def _serve(self, sock: zmq.Socket) -> None:
        poller = zmq.Poller()
        poller.register(sock, zmq.POLLIN)
        while not self._stop.is_set():
            try:
                ready = dict(poller.poll(self._poll_ms))
            except zmq.ZMQError:
                break
            if sock not in ready:
                continue
            try:
                req = sock.recv_json(zmq.NOBLOCK)
            except zmq.Again:
                continue
            except zmq.ZMQError:
                break
            except ValueError:
                # 壊れた JSON でも REP は応答しないと次の recv ができない
                self._reply(sock, {"status": "error", "message": "invalid json"})
                continue
            self._reply(sock, self.handle(req if isinstance(req, dict) else {}))

    @staticmethod
    def _reply(sock: zmq.Socket, payload: Dict[str, Any]) -> None:
        try:
            sock.send_json(payload)
        except zmq.ZMQError as exc:
            logger.warning("control plane reply failed: %s", exc)

    def handle(self, req: Dict[str, Any]) -> Dict[str, Any]:
        cmd = str(req.get("cmd", "")).upper()
        if cmd == "STATUS":
            return {"status": "ok", "data": self._status_provider().to_dict()}
        if cmd == "TRACK":
            if self._on_track_change is None:
                return {"status": "error", "message": "track notifications not accepted"}
            if "track_id" not in req:
                return {"status": "error", "message": "track_id is required"}
            track_id = req.get("track_id")
            if track_id is not None and not isinstance(track_id, (str, int)):
                return {"status": "error", "message": "track_id must be a string, number or null"}
            self._on_track_change(track_id)
            return {"status": "ok"}
        if cmd == "RECHECK":
            if self._on_recheck is not None:
                self._on_recheck()
            return {"status": "ok"}
        return {"status": "error", "message": f"unknown cmd: {cmd or '<empty>'}"}


__all__ = ["ControlPlaneServer"]
