"""
notifications.py
=================
Change propagation for the consultation store:
 - ChangeFeed: publish/subscribe on record keys ("doctors/<id>", "sessions/<id>",
   "sessions/<id>/chat") with exact-key or key-prefix subscriptions
 - PresenceConnection: a client's link to the backend, holding server-side
   disconnect fallbacks that fire when the link drops
 - WebSocket registry and Pushover pushes for doctors
"""

import itertools
import requests
from typing import Any, Callable, Dict, List, Tuple
from fastapi import WebSocket

from .log import get_logger

logger = get_logger(__name__)

Unsubscribe = Callable[[], None]

# ---------------------------------------------------------------------------
# CHANGE FEED
# ---------------------------------------------------------------------------

class ChangeFeed:
    """
    In-process publish/subscribe keyed by record path.
    Subscribers receive the full current value on every write until they
    call the returned unsubscribe function.
    """

    def __init__(self):
        self._subs: Dict[int, Tuple[str, bool, Callable[[str, Any], None]]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, key: str, callback: Callable[[str, Any], None], prefix: bool = False) -> Unsubscribe:
        sub_id = next(self._ids)
        self._subs[sub_id] = (key, prefix, callback)

        def unsubscribe():
            self._subs.pop(sub_id, None)

        return unsubscribe

    def publish(self, key: str, value: Any) -> None:
        for sub_key, prefix, callback in list(self._subs.values()):
            if key == sub_key or (prefix and key.startswith(sub_key.rstrip("/") + "/")):
                try:
                    callback(key, value)
                except Exception:
                    logger.exception("Subscriber for %s failed on %s", sub_key, key)


# Global feed instance
feed = ChangeFeed()

# ---------------------------------------------------------------------------
# PRESENCE CONNECTIONS
# ---------------------------------------------------------------------------

class PresenceConnection:
    """
    A client's connection to the backend.

    Fallback actions are held on the server side of the connection and run
    when drop() is called by the transport (socket closed, network lost,
    client crashed). A graceful close() discards them instead.
    """

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self.connected = True
        self._fallbacks: List[Callable[[], None]] = []

    def on_disconnect(self, action: Callable[[], None]) -> None:
        self._fallbacks.append(action)

    def cancel_fallbacks(self) -> None:
        self._fallbacks.clear()

    def drop(self) -> None:
        """Ungraceful loss of the connection: run every registered fallback."""
        if not self.connected:
            return
        self.connected = False
        fallbacks, self._fallbacks = self._fallbacks, []
        logger.info("Connection for %s dropped, running %d fallback(s)", self.owner_id, len(fallbacks))
        for action in fallbacks:
            try:
                action()
            except Exception:
                logger.exception("Disconnect fallback for %s failed", self.owner_id)

    def close(self) -> None:
        self.connected = False
        self.cancel_fallbacks()


# ---------------------------------------------------------------------------
# Pushover Notification (optional)
# ---------------------------------------------------------------------------

def send_pushover(token: str, user_key: str, title: str, message: str):
    """
    Sends a push notification using the Pushover API.
    Skipped when either the app token or the doctor's user key is missing.
    """
    if not user_key:
        return  # no pushover user configured

    if not token:
        logger.debug("Pushover token not configured, skipping notification.")
        return

    try:
        resp = requests.post(
            "https://api.pushover.net/1/messages.json",
            data={"token": token, "user": user_key, "title": title, "message": message},
            timeout=5
        )
        if resp.status_code != 200:
            logger.warning("Pushover error: %s", resp.text)
    except requests.RequestException as e:
        logger.warning("Pushover send failed: %s", e)

# ---------------------------------------------------------------------------
# WebSocket Registry
# ---------------------------------------------------------------------------

# Registry to store connected WebSocket clients per doctor
connected_doctors: Dict[str, List[WebSocket]] = {}


def register_ws(doctor_id: str, ws: WebSocket):
    """Register a WebSocket connection for a doctor."""
    connected_doctors.setdefault(doctor_id, []).append(ws)
    logger.info("Doctor %s connected via WebSocket (%d active).", doctor_id, len(connected_doctors[doctor_id]))


def unregister_ws(doctor_id: str, ws: WebSocket):
    """Unregister a WebSocket connection when disconnected."""
    if doctor_id in connected_doctors:
        connected_doctors[doctor_id] = [w for w in connected_doctors[doctor_id] if w != ws]
        if not connected_doctors[doctor_id]:
            del connected_doctors[doctor_id]
    logger.info("Doctor %s disconnected. Remaining sockets: %d", doctor_id, len(connected_doctors.get(doctor_id, [])))


async def broadcast_to_doctor(doctor_id: str, data: dict):
    """Send a JSON message to all active WebSocket connections for a doctor."""
    if doctor_id not in connected_doctors:
        return

    for ws in connected_doctors[doctor_id]:
        try:
            await ws.send_json(data)
        except Exception:
            logger.warning("Failed to send WS message to doctor %s", doctor_id)
