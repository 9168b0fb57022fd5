"""
heartbeat.py
============
Doctor-side liveness signal.

On start the emitter registers a disconnect fallback on the doctor's
presence connection (mark the doctor offline, drop the presence marker),
beats once, then beats every `interval_s` seconds. Graceful logout cancels
the loop and writes the offline state explicitly.
"""

import asyncio
from typing import Callable, Optional

from .clock import Clock, now_ms
from .errors import WriteFailed
from .log import get_logger
from .models import Doctor
from .notifications import PresenceConnection
from .registry import DoctorRegistry

logger = get_logger(__name__)


class HeartbeatEmitter:
    """
    Periodic ACTIVE/last_active_time writer for one online doctor.
    start() must be called from inside a running event loop.
    """

    def __init__(self, doctor_id: str, registry: DoctorRegistry, connection: PresenceConnection,
                 interval_s: float = 10.0, on_beat: Optional[Callable[[Doctor], None]] = None,
                 clock: Clock = now_ms):
        self.doctor_id = doctor_id
        self.registry = registry
        self.connection = connection
        self.interval_s = interval_s
        self.on_beat = on_beat
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self.connection.on_disconnect(self._fallback)
        self.beat()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Heartbeat started for doctor %s (every %ss)", self.doctor_id, self.interval_s)

    def beat(self) -> bool:
        """One alive write. A failed write is logged; the next beat retries."""
        try:
            doctor = self.registry.mark_alive(self.doctor_id, self.clock())
        except WriteFailed as e:
            logger.warning("Heartbeat write failed for doctor %s: %s", self.doctor_id, e.message)
            return False
        if doctor is None:
            logger.warning("Heartbeat for unknown doctor %s", self.doctor_id)
            return False
        if self.on_beat:
            self.on_beat(doctor)
        return True

    def stop(self):
        """Graceful logout: stop beating, then mark the doctor offline."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.connection.close()
        self.registry.mark_offline(self.doctor_id)
        logger.info("Heartbeat stopped for doctor %s", self.doctor_id)

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_s)
            self.beat()

    def _fallback(self):
        self.registry.mark_offline(self.doctor_id)
