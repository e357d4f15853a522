"""Cross-worker fan-out of live update events through PostgreSQL NOTIFY."""

from __future__ import annotations

import json
import logging
import os
import select
import threading
import uuid
from typing import Any, Dict, Optional

import psycopg2
from psycopg2 import sql

from .broadcast import EVENT_TYPES, LiveUpdateHub

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "cx_live_updates"


class PgNotifyRelay:
    """Forwards published events to every worker sharing the database.

    ``forward`` sends the envelope with ``pg_notify`` tagged with this worker's
    origin id. A background thread LISTENs on the same channel and republishes
    events from other origins into the local hub without forwarding them again.
    """

    def __init__(self, dsn: str, channel: str = DEFAULT_CHANNEL, origin: str | None = None) -> None:
        self.dsn = dsn
        self.channel = channel
        self.origin = origin or uuid.uuid4().hex
        self.hub: Optional[LiveUpdateHub] = None
        self._send_conn = None
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_env(cls) -> Optional["PgNotifyRelay"]:
        dsn = os.environ.get("CX_RELAY_DATABASE_URL") or os.environ.get("DATABASE_URL")
        if not dsn:
            return None
        return cls(dsn, channel=os.environ.get("CX_RELAY_CHANNEL", DEFAULT_CHANNEL))

    def start(self, hub: LiveUpdateHub) -> None:
        self.hub = hub
        hub.relay = self
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._listen, name="cx-relay-listener", daemon=True)
        self._thread.start()
        logger.info("Live update relay listening on channel %s (origin %s)", self.channel, self.origin)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        with self._send_lock:
            if self._send_conn is not None:
                try:
                    self._send_conn.close()
                except psycopg2.Error:
                    pass
                self._send_conn = None

    def forward(self, envelope: Dict[str, Any]) -> None:
        payload = json.dumps({"origin": self.origin, "envelope": envelope}, separators=(",", ":"))
        with self._send_lock:
            try:
                if self._send_conn is None or self._send_conn.closed:
                    self._send_conn = psycopg2.connect(self.dsn)
                    self._send_conn.autocommit = True
                with self._send_conn.cursor() as cur:
                    cur.execute("SELECT pg_notify(%s, %s)", (self.channel, payload))
            except psycopg2.Error as exc:
                logger.warning("Live update relay could not notify (%s)", exc)
                if self._send_conn is not None:
                    try:
                        self._send_conn.close()
                    except psycopg2.Error:
                        pass
                self._send_conn = None

    def handle_payload(self, raw: str) -> bool:
        """Republish a NOTIFY payload locally; returns False when ignored."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed relay payload")
            return False
        if not isinstance(message, dict) or message.get("origin") == self.origin:
            return False
        body = message.get("envelope")
        if not isinstance(body, dict) or body.get("type") not in EVENT_TYPES or self.hub is None:
            return False
        data = body.get("data") if isinstance(body.get("data"), dict) else None
        self.hub.publish(body["type"], data, forward=False, timestamp=body.get("timestamp"))
        return True

    def _listen(self) -> None:
        while not self._stop.is_set():
            conn = None
            try:
                conn = psycopg2.connect(self.dsn)
                conn.autocommit = True
                with conn.cursor() as cur:
                    cur.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.channel)))
                while not self._stop.is_set():
                    if select.select([conn], [], [], 1.0) == ([], [], []):
                        continue
                    conn.poll()
                    while conn.notifies:
                        notification = conn.notifies.pop(0)
                        self.handle_payload(notification.payload)
            except psycopg2.Error as exc:
                logger.warning("Live update relay listener lost its connection (%s); retrying", exc)
                self._stop.wait(5.0)
            finally:
                if conn is not None:
                    try:
                        conn.close()
                    except psycopg2.Error:
                        pass
