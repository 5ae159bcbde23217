"""
The pipeline orchestrator: one explicit state machine per run.

    CREATED -> RESOLVING_METADATA -> MATCHING_CATALOG -> ACQUIRING_AUDIO
            -> FETCHING_ARTWORK -> MUXING -> FINISHED (success | error)

Stages raise; this module is the single place where failures are caught,
turned into one terminal error event and followed by cleanup.
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from trackgrab.exceptions import PipelineError, ProvisionError, RunCancelled
from trackgrab.media.downloader import Downloader
from trackgrab.media.extractor import AcquisitionEngine
from trackgrab.media.muxer import TaggingStage
from trackgrab.media.resolver import MetadataResolver
from trackgrab.models.config import AppConfig
from trackgrab.models.progress import Stage
from trackgrab.models.track import SourceReference, TrackMetadata
from trackgrab.provisioning.provisioner import Provisioner
from trackgrab.utils.path import output_filename

from .progress import ProgressChannel

log = logging.getLogger(__name__)

# Titles are stripped to [A-Za-z0-9 ], so these can never collide with an output name
AUDIO_STEM = "_source"
ARTWORK_NAME = "_cover.jpg"


class TrackCatalog(Protocol):
    async def match_track(self, query: str) -> TrackMetadata: ...


@dataclass
class PipelineRun:
    """One execution of the pipeline, owning a private working directory."""

    run_id: str
    source: SourceReference
    work_dir: Path
    channel: ProgressChannel
    audio_format: str = "mp3"
    query: str | None = None
    track: TrackMetadata | None = None
    output_path: Path | None = None
    error: PipelineError | ProvisionError | None = None
    error_kind: str | None = None
    failed_stage: Stage | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def stage(self) -> Stage:
        return self.channel.stage

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @property
    def succeeded(self) -> bool:
        return self.finished and self.output_path is not None and self.error_kind is None

    @property
    def audio_path(self) -> Path:
        return self.work_dir / f"{AUDIO_STEM}.{self.audio_format}"

    @property
    def artwork_path(self) -> Path:
        return self.work_dir / ARTWORK_NAME

    def transition(self, stage: Stage) -> None:
        log.debug(f"[{self.run_id}] -> {stage.value}")
        self.channel.enter_stage(stage)

    def remove_temporaries(self) -> None:
        """Deletes everything in the working directory except the artifact."""
        if not self.work_dir.is_dir():
            return
        for entry in self.work_dir.iterdir():
            if self.output_path is not None and entry == self.output_path:
                continue
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    os.remove(entry)
            except OSError as e:
                log.warning(f"[{self.run_id}] Could not remove {entry.name}: {e}")

    def remove_work_dir(self) -> None:
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def clean_up(self) -> None:
        """Keeps only the artifact of a successful run, removes everything otherwise."""
        if self.succeeded:
            self.remove_temporaries()
        else:
            self.remove_work_dir()


class Pipeline:
    """Sequences the stages for a run and owns its failure handling."""

    def __init__(
        self,
        config: AppConfig,
        provisioner: Provisioner,
        catalog: TrackCatalog,
        downloader: Downloader,
        resolver: MetadataResolver | None = None,
        engine: AcquisitionEngine | None = None,
        tagging: TaggingStage | None = None,
    ):
        self.config = config
        self.provisioner = provisioner
        self.catalog = catalog
        self.resolver = resolver or MetadataResolver(timeout=config.metadata_timeout)
        self.engine = engine or AcquisitionEngine(
            audio_format=config.audio_format, timeout=config.acquisition_timeout
        )
        self.tagging = tagging or TaggingStage(
            downloader,
            audio_format=config.audio_format,
            mux_timeout=config.mux_timeout,
            artwork_timeout=config.artwork_timeout,
            verify_output=config.verify_output,
        )

    async def preview(self, source: SourceReference) -> TrackMetadata:
        """Runs only metadata resolution and catalog matching."""
        await self.provisioner.ensure_ready()
        query = await self.resolver.resolve(
            source, self.provisioner.ytdlp_path, self.provisioner.cookies_file
        )
        return await self.catalog.match_track(query)

    async def execute(self, run: PipelineRun) -> PipelineRun:
        """
        Drives ``run`` to FINISHED. Stage failures are reported through the
        run's channel, never raised. Cancellation is reported too, and then
        re-raised so the awaiting task ends as cancelled.
        """
        started = time.monotonic()
        log.info(f"[{run.run_id}] Run started for {run.source}")
        try:
            await self._run_stages(run)
        except (PipelineError, ProvisionError) as e:
            self._fail(run, e, e.kind, str(e))
        except asyncio.CancelledError:
            cancelled = RunCancelled()
            self._fail(run, cancelled, cancelled.kind, str(cancelled))
            raise
        except Exception as e:
            log.exception(f"[{run.run_id}] Unexpected failure in {run.stage.value}")
            self._fail(run, None, "internal_error", f"Unexpected error: {e}")
        finally:
            run.finished_at = time.time()
            # Shielded so a second cancel cannot leave the directory half removed
            await asyncio.shield(asyncio.to_thread(run.clean_up))

        if run.succeeded:
            log.info(
                f"[{run.run_id}] [green]✓ Finished[/green] '{run.output_path.name}' "
                f"in {time.monotonic() - started:.1f}s"
            )
        return run

    def abandon(self, run: PipelineRun) -> None:
        """Finishes a run whose task was cancelled before ``execute`` began."""
        if run.finished:
            return
        cancelled = RunCancelled()
        self._fail(run, cancelled, cancelled.kind, str(cancelled))
        run.finished_at = time.time()
        # Nothing ran yet, so the directory is still empty
        run.remove_work_dir()

    async def _run_stages(self, run: PipelineRun) -> None:
        await self.provisioner.ensure_ready()
        ytdlp = self.provisioner.ytdlp_path
        ffmpeg = self.provisioner.ffmpeg_path
        cookies = self.provisioner.cookies_file

        run.transition(Stage.RESOLVING_METADATA)
        run.query = await self.resolver.resolve(run.source, ytdlp, cookies)

        run.transition(Stage.MATCHING_CATALOG)
        run.track = await self.catalog.match_track(run.query)
        log.info(
            f"[{run.run_id}] Matched '{run.track.title}' by {run.track.artist_display}"
        )

        run.transition(Stage.ACQUIRING_AUDIO)
        await self.engine.acquire(
            run.source,
            run.audio_path,
            run.channel.report_percent,
            ytdlp,
            ffmpeg,
            cookies,
        )

        run.transition(Stage.FETCHING_ARTWORK)
        await self.tagging.fetch_artwork(run.track, run.artwork_path)

        run.transition(Stage.MUXING)
        output_path = run.work_dir / output_filename(run.track.title, run.audio_format)
        await self.tagging.mux(
            ffmpeg, run.audio_path, run.artwork_path, run.track, output_path
        )

        run.output_path = output_path
        run.channel.finish(output_path.name)

    def _fail(
        self,
        run: PipelineRun,
        error: PipelineError | ProvisionError | None,
        kind: str,
        reason: str,
    ) -> None:
        failed_stage = run.stage
        if isinstance(error, PipelineError) and error.stage is None:
            error.stage = failed_stage.value
        run.error = error
        run.error_kind = kind
        run.failed_stage = failed_stage
        run.output_path = None
        run.channel.fail(kind, reason, failed_stage)

        if isinstance(error, PipelineError) and error.user_facing:
            log.warning(f"[{run.run_id}] [yellow]{failed_stage.value}: {reason}[/yellow]")
        elif kind == RunCancelled.kind:
            log.info(f"[{run.run_id}] Run cancelled during {failed_stage.value}")
        else:
            log.error(f"[{run.run_id}] [red]✗ {failed_stage.value} failed ({kind}): {reason}[/red]")
            if output := getattr(error, "output", ""):
                log.debug(f"[{run.run_id}] Tool output:\n{output}")
