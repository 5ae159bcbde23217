from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest
from mutagen.easyid3 import EasyID3

from fakes import (
    VIDEO_URL,
    FakeArtworkDownloader,
    FakeCatalog,
    make_pipeline,
    process_is_gone,
    sample_track,
)
from trackgrab.core.pipeline import PipelineRun
from trackgrab.core.run_registry import ArtifactNotReady, RunNotFound, RunRegistry
from trackgrab.models.progress import EventType, Stage
from trackgrab.models.track import SourceReference

HAPPY_PATH = [
    Stage.CREATED,
    Stage.RESOLVING_METADATA,
    Stage.MATCHING_CATALOG,
    Stage.ACQUIRING_AUDIO,
    Stage.FETCHING_ARTWORK,
    Stage.MUXING,
    Stage.FINISHED,
]


def _registry(pipeline, tmp_path: Path) -> RunRegistry:
    return RunRegistry(pipeline, tmp_path / "runs", artifact_ttl_seconds=60)


async def _run_to_end(registry: RunRegistry, source: str):
    run = registry.start_run(SourceReference(source))
    events = [event async for event in registry.subscribe(run.run_id)]
    await registry.wait(run.run_id)
    return run, events


def _stages(events) -> list[Stage]:
    seen: list[Stage] = []
    for event in events:
        if not seen or seen[-1] is not event.stage:
            seen.append(event.stage)
    return seen


def test_successful_run_produces_one_tagged_file(tmp_path: Path, pipeline, catalog) -> None:
    registry = _registry(pipeline, tmp_path)

    run, events = asyncio.run(_run_to_end(registry, VIDEO_URL))

    assert run.succeeded
    assert _stages(events) == HAPPY_PATH
    assert events[-1].type is EventType.DONE
    assert events[-1].artifact == "Song Title.mp3"
    assert sum(1 for e in events if e.is_terminal) == 1
    assert catalog.queries == ["Song Title (Official Video) Some Artist"]

    percents = [e.percent for e in events if e.stage is Stage.ACQUIRING_AUDIO and e.percent is not None]
    assert percents == sorted(percents)
    assert percents[-1] == 100.0

    assert [p.name for p in run.work_dir.iterdir()] == ["Song Title.mp3"]
    tags = EasyID3(str(run.output_path))
    assert tags["title"] == ["Song Title"]
    assert tags["artist"] == ["Some Artist, Guest"]
    assert tags["album"] == ["Some Album"]


def test_cleanup_runs_off_the_event_loop_thread(tmp_path: Path, pipeline, monkeypatch) -> None:
    registry = _registry(pipeline, tmp_path)
    original = PipelineRun.clean_up
    cleanup_threads: list[int] = []

    def recording_clean_up(run) -> None:
        cleanup_threads.append(threading.get_ident())
        original(run)

    monkeypatch.setattr(PipelineRun, "clean_up", recording_clean_up)

    run, _ = asyncio.run(_run_to_end(registry, VIDEO_URL))

    assert run.succeeded
    assert len(cleanup_threads) == 1
    assert cleanup_threads[0] != threading.get_ident()
    assert [p.name for p in run.work_dir.iterdir()] == ["Song Title.mp3"]


def test_artifact_is_handed_out_then_released(tmp_path: Path, pipeline) -> None:
    registry = _registry(pipeline, tmp_path)

    async def scenario():
        run, _ = await _run_to_end(registry, VIDEO_URL)
        artifact = registry.take_artifact(run.run_id)
        with pytest.raises(RunNotFound):
            registry.take_artifact(run.run_id)
        payload = artifact.path.read_bytes()
        await registry.release(run.run_id)
        return run, artifact, payload

    run, artifact, payload = asyncio.run(scenario())

    assert artifact.filename == "Song Title.mp3"
    assert artifact.content_type == "audio/mpeg"
    assert payload
    assert not run.work_dir.exists()
    with pytest.raises(RunNotFound):
        registry.get(run.run_id)


@pytest.mark.parametrize(
    "source, fake_catalog, fake_artwork, kind, failed_stage",
    [
        (VIDEO_URL + "&unavailable=1", FakeCatalog(), FakeArtworkDownloader(),
         "source_unresolvable", Stage.RESOLVING_METADATA),
        (VIDEO_URL, FakeCatalog(no_match=True), FakeArtworkDownloader(),
         "no_match", Stage.MATCHING_CATALOG),
        (VIDEO_URL + "&brokenstream=1", FakeCatalog(), FakeArtworkDownloader(),
         "acquisition_failed", Stage.ACQUIRING_AUDIO),
        (VIDEO_URL, FakeCatalog(), FakeArtworkDownloader(payload=b""),
         "artwork_unavailable", Stage.FETCHING_ARTWORK),
        (VIDEO_URL, FakeCatalog(sample_track(title="Broken Mux")), FakeArtworkDownloader(),
         "mux_failed", Stage.MUXING),
    ],
)
def test_failures_end_with_one_error_and_no_leftovers(
    tmp_path: Path, fake_tools, source, fake_catalog, fake_artwork, kind, failed_stage
) -> None:
    registry = _registry(make_pipeline(tmp_path, fake_tools, fake_catalog, fake_artwork), tmp_path)

    run, events = asyncio.run(_run_to_end(registry, source))

    assert not run.succeeded
    assert run.error_kind == kind
    assert run.failed_stage is failed_stage
    assert [e.type for e in events].count(EventType.ERROR) == 1
    assert events[-1].type is EventType.ERROR
    assert events[-1].failed_stage is failed_stage
    assert not run.work_dir.exists()
    with pytest.raises(ArtifactNotReady):
        registry.take_artifact(run.run_id)


def test_no_match_is_reported_in_plain_words(tmp_path: Path, fake_tools) -> None:
    registry = _registry(
        make_pipeline(tmp_path, fake_tools, FakeCatalog(no_match=True)), tmp_path
    )

    _, events = asyncio.run(_run_to_end(registry, VIDEO_URL))

    assert events[-1].to_dict()["reason"] == "Could not identify this track."


def test_missing_tools_fail_the_run_before_any_stage(tmp_path: Path, fake_tools) -> None:
    fake_tools.ytdlp = str(tmp_path / "nowhere" / "yt-dlp")
    registry = _registry(make_pipeline(tmp_path, fake_tools), tmp_path)

    run, events = asyncio.run(_run_to_end(registry, VIDEO_URL))

    assert run.error_kind == "tool_unavailable"
    assert events[-1].failed_stage is Stage.CREATED
    assert not run.work_dir.exists()


def test_concurrent_runs_are_isolated(tmp_path: Path, pipeline) -> None:
    registry = _registry(pipeline, tmp_path)

    async def scenario():
        return await asyncio.gather(*(_run_to_end(registry, VIDEO_URL) for _ in range(10)))

    results = asyncio.run(scenario())

    run_ids = {run.run_id for run, _ in results}
    work_dirs = {run.work_dir for run, _ in results}
    assert len(run_ids) == 10
    assert len(work_dirs) == 10
    for run, events in results:
        assert run.succeeded
        assert {e.run_id for e in events} == {run.run_id}
        assert run.output_path.parent == run.work_dir
        assert run.output_path.is_file()


def test_cancelling_a_run_kills_the_extractor_and_cleans_up(tmp_path: Path, pipeline, fake_tools) -> None:
    registry = _registry(pipeline, tmp_path)
    pid_file = fake_tools.state_dir / "slow.pid"

    async def scenario():
        run = registry.start_run(SourceReference(VIDEO_URL + "&slow=1"))
        for _ in range(400):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        assert run.stage is Stage.ACQUIRING_AUDIO
        cancelled = await registry.cancel(run.run_id)
        events = [event async for event in registry.subscribe(run.run_id)]
        return run, cancelled, events

    run, cancelled, events = asyncio.run(scenario())

    assert cancelled is True
    assert process_is_gone(int(pid_file.read_text()))
    assert run.error_kind == "cancelled"
    assert events[-1].failed_stage is Stage.ACQUIRING_AUDIO
    assert not run.work_dir.exists()


def test_cancel_after_completion_is_a_no_op(tmp_path: Path, pipeline) -> None:
    registry = _registry(pipeline, tmp_path)

    async def scenario():
        run, _ = await _run_to_end(registry, VIDEO_URL)
        return run, await registry.cancel(run.run_id)

    run, cancelled = asyncio.run(scenario())

    assert cancelled is False
    assert run.succeeded


def test_cancel_before_the_run_starts_still_finishes_it(tmp_path: Path, pipeline) -> None:
    registry = _registry(pipeline, tmp_path)

    async def scenario():
        run = registry.start_run(SourceReference(VIDEO_URL))
        cancelled = await registry.cancel(run.run_id)

        async def collect():
            return [event async for event in registry.subscribe(run.run_id)]

        events = await asyncio.wait_for(collect(), timeout=5)
        return run, cancelled, events

    run, cancelled, events = asyncio.run(scenario())

    assert cancelled is True
    assert run.finished
    assert run.error_kind == "cancelled"
    assert run.failed_stage is Stage.CREATED
    assert [e.type for e in events].count(EventType.ERROR) == 1
    assert events[-1].type is EventType.ERROR
    assert not run.work_dir.exists()


def test_uncollected_artifacts_are_reaped(tmp_path: Path, pipeline) -> None:
    registry = _registry(pipeline, tmp_path)

    async def scenario():
        run, _ = await _run_to_end(registry, VIDEO_URL)
        fresh = await registry.reap_expired()
        run.finished_at = time.time() - 120
        stale = await registry.reap_expired()
        return run, fresh, stale

    run, fresh, stale = asyncio.run(scenario())

    assert (fresh, stale) == (0, 1)
    assert len(registry) == 0
    assert not run.work_dir.exists()


def test_shutdown_cancels_live_runs(tmp_path: Path, pipeline, fake_tools) -> None:
    registry = _registry(pipeline, tmp_path)
    pid_file = fake_tools.state_dir / "slow.pid"

    async def scenario():
        run = registry.start_run(SourceReference(VIDEO_URL + "&slow=1"))
        for _ in range(400):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        await registry.shutdown()
        return run

    run = asyncio.run(scenario())

    assert len(registry) == 0
    assert not run.work_dir.exists()
    assert process_is_gone(int(pid_file.read_text()))


def test_preview_matches_without_downloading(tmp_path: Path, pipeline, artwork) -> None:
    track = asyncio.run(pipeline.preview(SourceReference(VIDEO_URL)))

    assert track.title == "Song Title"
    assert artwork.requested == []
