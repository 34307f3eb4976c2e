"""
Periodic live-location refresh.

A participant sharing a live position has their device re-read on an interval, and
each reading goes through the normal `set_location` intent. If the user refuses
location access the refresher stops for good and hands over to the manual-entry path
through `on_permission_denied`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from midmeet.domain.errors import DomainError, LocationPermissionDeniedError
from midmeet.domain.models import Location, LocationKind

logger = logging.getLogger(__name__)


class LocationSensor(Protocol):
    async def read_position(self) -> Location: ...


class LocationRefresher:
    """Feeds device positions into a session until stopped or denied."""

    def __init__(
        self,
        service,
        sensor: LocationSensor,
        session_id: str,
        participant_id: str,
        interval_seconds: float | None = None,
        *,
        on_permission_denied: Callable[[], None] | None = None,
    ):
        self._service = service
        self._sensor = sensor
        self._session_id = session_id
        self._participant_id = participant_id
        self._interval = (
            interval_seconds if interval_seconds is not None else service.settings.session.location_refresh_seconds
        )
        self._on_permission_denied = on_permission_denied
        self._task: asyncio.Task | None = None
        self.permission_denied = False
        self.updates = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh_once(self) -> bool:
        """Read the sensor once and submit it; False once permission is denied."""
        if self.permission_denied:
            return False
        try:
            position = await self._sensor.read_position()
        except LocationPermissionDeniedError:
            logger.info(
                "Location permission denied for participant %s in session %s; switching to manual entry",
                self._participant_id,
                self._session_id,
            )
            self.permission_denied = True
            if self._on_permission_denied is not None:
                self._on_permission_denied()
            return False

        if position.kind is not LocationKind.LIVE:
            position = position.model_copy(update={"kind": LocationKind.LIVE})
        await self._service.set_location(self._session_id, self._participant_id, position)
        self.updates += 1
        return True

    async def run(self) -> None:
        """Refresh immediately, then every interval, until stopped or denied.

        A failed read (sensor timeout, flaky store) is logged and retried next interval.
        """
        while True:
            try:
                keep_going = await self.refresh_once()
            except DomainError as e:
                # The session ended or the participant was removed.
                logger.info("Stopping location refresh for %s: %s", self._participant_id, e)
                return
            except Exception:
                logger.exception(
                    "Location refresh for %s failed; retrying in %ss", self._participant_id, self._interval
                )
                keep_going = True
            if not keep_going:
                return
            await asyncio.sleep(self._interval)

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
