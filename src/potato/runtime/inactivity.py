from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class Handle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> Handle: ...


class LoopScheduler:
    """Schedules callbacks on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Handle:
        return asyncio.get_running_loop().call_later(delay, callback)


class InactivityMonitor:
    """Warn, then expire, after a stretch with no activity.

    Both deadlines are measured from the last activity and are scheduled
    independently; the warning firing leaves the expiry deadline in place.
    """

    def __init__(
        self,
        *,
        on_warning: Callable[[], None],
        on_expire: Callable[[], None],
        is_armed: Callable[[], bool],
        warn_after: float = 240.0,
        expire_after: float = 300.0,
        scheduler: Scheduler | None = None,
    ):
        self.on_warning = on_warning
        self.on_expire = on_expire
        self.is_armed = is_armed
        self.warn_after = warn_after
        self.expire_after = expire_after
        self.scheduler = scheduler or LoopScheduler()
        self.warning_active = False
        self._warning_handle: Handle | None = None
        self._expiry_handle: Handle | None = None

    @property
    def armed(self) -> bool:
        return self._expiry_handle is not None

    def touch(self) -> None:
        self.cancel()
        if not self.is_armed():
            return
        self._warning_handle = self.scheduler.call_later(self.warn_after, self._fire_warning)
        self._expiry_handle = self.scheduler.call_later(self.expire_after, self._fire_expiry)

    def dismiss_warning(self) -> None:
        self.touch()

    def cancel(self) -> None:
        self.warning_active = False
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _fire_warning(self) -> None:
        self._warning_handle = None
        self.warning_active = True
        logger.debug("Inactivity warning after %.0fs", self.warn_after)
        self.on_warning()

    def _fire_expiry(self) -> None:
        self._expiry_handle = None
        self.warning_active = False
        logger.info("Session expired after %.0fs of inactivity", self.expire_after)
        self.on_expire()
