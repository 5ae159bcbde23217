"""
Per-run progress channels.

Each run owns one :class:`ProgressChannel`; events never cross between
runs. Any number of consumers may subscribe to a channel, and every
subscription is a finite async iterator that ends with the run's terminal
event (or when the channel is closed).
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from trackgrab.models.progress import STAGE_MESSAGES, EventType, ProgressEvent, Stage

log = logging.getLogger(__name__)

_STAGE_ORDER = {stage: index for index, stage in enumerate(Stage)}


class ProgressChannel:
    """An append-only event log for one run with async subscribers."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._events: list[ProgressEvent] = []
        self._closed = False
        self._wakeup = asyncio.Event()
        self._stage = Stage.CREATED
        self._last_percent: float | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stage(self) -> Stage:
        return self._stage

    @property
    def last_event(self) -> ProgressEvent | None:
        return self._events[-1] if self._events else None

    @property
    def events(self) -> list[ProgressEvent]:
        return list(self._events)

    def _append(self, event: ProgressEvent) -> ProgressEvent:
        self._events.append(event)
        # Wake every waiting subscriber, then arm a fresh event for the next round
        self._wakeup.set()
        self._wakeup = asyncio.Event()
        return event

    def enter_stage(self, stage: Stage, message: str | None = None) -> ProgressEvent | None:
        """Records a stage transition. Stages only ever move forward."""
        if self._closed or _STAGE_ORDER[stage] < _STAGE_ORDER[self._stage]:
            return None
        self._stage = stage
        self._last_percent = None
        return self._append(
            ProgressEvent(
                self.run_id,
                EventType.PROGRESS,
                stage,
                message=message or STAGE_MESSAGES.get(stage),
            )
        )

    def report_percent(self, percent: float, message: str | None = None) -> ProgressEvent | None:
        """
        Publishes a percentage for the current stage. Values lower than, or
        equal to, the last one reported for this stage are dropped, so the
        sequence seen by subscribers is non-decreasing.
        """
        if self._closed:
            return None
        percent = max(0.0, min(100.0, float(percent)))
        if self._last_percent is not None and percent <= self._last_percent:
            return None
        self._last_percent = percent
        return self._append(
            ProgressEvent(
                self.run_id,
                EventType.PROGRESS,
                self._stage,
                percent=percent,
                message=message or STAGE_MESSAGES.get(self._stage),
            )
        )

    def finish(self, artifact: str) -> ProgressEvent | None:
        """Emits the ``done`` event and closes the channel."""
        if self._closed:
            return None
        self._stage = Stage.FINISHED
        event = self._append(
            ProgressEvent(
                self.run_id,
                EventType.DONE,
                Stage.FINISHED,
                percent=100.0,
                message=STAGE_MESSAGES[Stage.FINISHED],
                artifact=artifact,
            )
        )
        self._closed = True
        return event

    def fail(self, error_kind: str, reason: str, failed_stage: Stage) -> ProgressEvent | None:
        """Emits the ``error`` event and closes the channel."""
        if self._closed:
            return None
        self._stage = Stage.FINISHED
        event = self._append(
            ProgressEvent(
                self.run_id,
                EventType.ERROR,
                Stage.FINISHED,
                message=reason,
                error_kind=error_kind,
                failed_stage=failed_stage,
            )
        )
        self._closed = True
        return event

    def close(self) -> None:
        """Ends all subscriptions without a terminal event."""
        if not self._closed:
            self._closed = True
            self._wakeup.set()

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        """
        Yields every event of the run, starting from the first one, and
        returns after the terminal event.
        """
        index = 0
        while True:
            while index < len(self._events):
                event = self._events[index]
                index += 1
                yield event
                if event.is_terminal:
                    return
            if self._closed:
                return
            await self._wakeup.wait()


class ProgressBroadcaster:
    """Routes progress by run ID to the run's own channel."""

    def __init__(self):
        self._channels: dict[str, ProgressChannel] = {}

    def open(self, run_id: str) -> ProgressChannel:
        if run_id in self._channels:
            raise ValueError(f"Run '{run_id}' already has a channel.")
        channel = ProgressChannel(run_id)
        self._channels[run_id] = channel
        return channel

    def subscribe(self, run_id: str) -> AsyncIterator[ProgressEvent]:
        channel = self._channels.get(run_id)
        if channel is None:
            raise KeyError(run_id)
        return channel.subscribe()

    def discard(self, run_id: str) -> None:
        if channel := self._channels.pop(run_id, None):
            channel.close()

    def __len__(self) -> int:
        return len(self._channels)
