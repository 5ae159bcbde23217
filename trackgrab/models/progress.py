"""
Run stages and the progress events emitted while a run advances.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Stage(str, Enum):
    """States of a pipeline run, in the order they are entered."""

    CREATED = "created"
    RESOLVING_METADATA = "resolving_metadata"
    MATCHING_CATALOG = "matching_catalog"
    ACQUIRING_AUDIO = "acquiring_audio"
    FETCHING_ARTWORK = "fetching_artwork"
    MUXING = "muxing"
    FINISHED = "finished"


STAGE_MESSAGES = {
    Stage.CREATED: "Queued",
    Stage.RESOLVING_METADATA: "Reading video details",
    Stage.MATCHING_CATALOG: "Identifying track",
    Stage.ACQUIRING_AUDIO: "Downloading",
    Stage.FETCHING_ARTWORK: "Fetching cover art",
    Stage.MUXING: "Tagging",
    Stage.FINISHED: "Finished",
}


class EventType(str, Enum):
    PROGRESS = "progress"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """A single update for one run."""

    run_id: str
    type: EventType
    stage: Stage
    percent: float | None = None
    message: str | None = None
    artifact: str | None = None
    error_kind: str | None = None
    failed_stage: Stage | None = None
    timestamp: float = field(default_factory=time.time, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.DONE, EventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "runId": self.run_id,
            "type": self.type.value,
            "stage": self.stage.value,
        }
        if self.percent is not None:
            payload["percent"] = round(self.percent, 1)
        if self.message:
            payload["message"] = self.message
        if self.type is EventType.DONE:
            payload["done"] = True
            payload["artifact"] = self.artifact
        if self.type is EventType.ERROR:
            payload["error"] = self.error_kind
            payload["reason"] = self.message
            if self.failed_stage is not None:
                payload["failedStage"] = self.failed_stage.value
        return payload
