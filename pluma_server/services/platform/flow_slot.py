import logging
import threading
from typing import Optional


class FlowSlot:
    """
    Single-flight guard shared by every trigger source.

    Acquisition never blocks: a caller that loses the race is rejected
    instead of queued.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._holder: Optional[str] = None

    def try_acquire(self, holder: str) -> bool:
        if not self._lock.acquire(blocking=False):
            logger.info("Flow slot busy (held by %s); rejecting %s", self._holder, holder)
            return False
        with self._state_lock:
            self._holder = holder
        return True

    def release(self) -> None:
        with self._state_lock:
            self._holder = None
        if self._lock.locked():
            self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> Optional[str]:
        with self._state_lock:
            return self._holder


flow_slot = FlowSlot()

logger = logging.getLogger(__name__)
