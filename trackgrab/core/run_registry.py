"""
The arena of live runs, keyed by run ID.

The registry creates each run's private working directory, starts its
pipeline task, hands out its progress subscription and artifact, and
removes the directory once the artifact has been delivered, the run failed,
or the artifact was left uncollected for too long.
"""

import asyncio
import logging
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from trackgrab.models.config import get_format_info
from trackgrab.models.track import SourceReference
from trackgrab.utils.path import create_dir

from .pipeline import Pipeline, PipelineRun
from .progress import ProgressBroadcaster

log = logging.getLogger(__name__)


class RunNotFound(KeyError):
    """Raised for an unknown or already released run ID."""


class ArtifactNotReady(RuntimeError):
    """Raised when the artifact is requested before the run succeeded."""


@dataclass(frozen=True)
class Artifact:
    path: Path
    filename: str
    content_type: str


class RunRegistry:
    """Owns all runs of one process."""

    def __init__(
        self,
        pipeline: Pipeline,
        work_root: Path,
        artifact_ttl_seconds: float = 1800,
        reap_interval_seconds: float = 60,
    ):
        self.pipeline = pipeline
        self.work_root = work_root
        self.artifact_ttl = artifact_ttl_seconds
        self.reap_interval = reap_interval_seconds
        self.broadcaster = ProgressBroadcaster()
        self._runs: dict[str, PipelineRun] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._taken: set[str] = set()
        self._listeners: dict[str, int] = {}
        self._reaper_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._runs)

    def get(self, run_id: str) -> PipelineRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFound(run_id) from None

    def start_run(self, source: SourceReference) -> PipelineRun:
        """Creates a run with a fresh working directory and starts it."""
        run_id = uuid.uuid4().hex
        work_dir = self.work_root / run_id
        create_dir(work_dir)
        run = PipelineRun(
            run_id=run_id,
            source=source,
            work_dir=work_dir,
            channel=self.broadcaster.open(run_id),
            audio_format=self.pipeline.config.audio_format,
        )
        run.transition(run.stage)
        self._runs[run_id] = run
        task = asyncio.create_task(self.pipeline.execute(run), name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda t, rid=run_id: self._on_run_done(rid, t))
        log.debug(f"[{run_id}] Run created in {work_dir}")
        return run

    def _on_run_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            if run := self._runs.get(run_id):
                self.pipeline.abandon(run)
            return
        if exc := task.exception():
            log.error(f"[{run_id}] Run task crashed: {exc}")

    async def wait(self, run_id: str) -> PipelineRun:
        """Waits for the run to finish, whatever its outcome."""
        run = self.get(run_id)
        if task := self._tasks.get(run_id):
            await asyncio.wait({task})
        return run

    def subscribe(self, run_id: str):
        self.get(run_id)
        return self.broadcaster.subscribe(run_id)

    def add_listener(self, run_id: str) -> None:
        """Counts a client that is following the run over a connection."""
        self._listeners[run_id] = self._listeners.get(run_id, 0) + 1

    def remove_listener(self, run_id: str) -> int:
        """Forgets one client and returns how many are still following the run."""
        remaining = self._listeners.get(run_id, 0) - 1
        if remaining > 0:
            self._listeners[run_id] = remaining
        else:
            self._listeners.pop(run_id, None)
        return max(remaining, 0)

    async def cancel(self, run_id: str) -> bool:
        """
        Cancels an in-flight run and waits until its external process is
        terminated and its directory cleaned. Returns False if it had
        already finished.
        """
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        log.info(f"[{run_id}] Cancelled by caller.")
        return True

    def take_artifact(self, run_id: str) -> Artifact:
        """
        Returns the finished artifact. The caller must ``release`` afterwards.
        Each artifact is handed out once, later callers see the run as gone.
        """
        run = self.get(run_id)
        if run_id in self._taken:
            raise RunNotFound(run_id)
        if not run.finished:
            raise ArtifactNotReady("The run is still in progress.")
        if not run.succeeded or run.output_path is None or not run.output_path.is_file():
            raise ArtifactNotReady(run.error_kind or "no artifact")
        self._taken.add(run_id)
        return Artifact(
            path=run.output_path,
            filename=run.output_path.name,
            content_type=get_format_info(run.audio_format)["mime"],
        )

    async def release(self, run_id: str) -> None:
        """Forgets the run and deletes its working directory."""
        run = self._runs.pop(run_id, None)
        self.broadcaster.discard(run_id)
        self._taken.discard(run_id)
        self._listeners.pop(run_id, None)
        if run is None:
            return
        await asyncio.to_thread(run.remove_work_dir)
        log.debug(f"[{run_id}] Released.")

    async def reap_expired(self) -> int:
        """Releases finished runs older than the artifact TTL."""
        now = time.time()
        expired = [
            run_id
            for run_id, run in self._runs.items()
            if run.finished_at is not None and now - run.finished_at > self.artifact_ttl
        ]
        for run_id in expired:
            log.info(f"[{run_id}] Artifact not collected in time, removing.")
            await self.release(run_id)
        return len(expired)

    async def start_background_reaper(self) -> None:
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reaper_loop())
            log.debug("Started artifact reaper task.")

    async def _reaper_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.reap_interval)
                await self.reap_expired()
            except asyncio.CancelledError:
                break
            except OSError as e:
                log.warning(f"Error in artifact reaper loop: {e}")

    async def shutdown(self) -> None:
        """Cancels in-flight runs and removes every run directory."""
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reaper_task
        for run_id in list(self._tasks):
            await self.cancel(run_id)
        for run_id in list(self._runs):
            await self.release(run_id)
