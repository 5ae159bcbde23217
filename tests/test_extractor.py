from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from fakes import VIDEO_URL
from trackgrab.exceptions import AcquisitionFailed
from trackgrab.media.extractor import AcquisitionEngine, parse_progress
from trackgrab.models.track import SourceReference


def test_parse_progress() -> None:
    assert parse_progress("[download]  42.5% of 3.00MiB at 1.00MiB/s ETA 00:02") == 42.5
    assert parse_progress("[download] 100% of 3.00MiB in 00:03") == 100.0
    assert parse_progress("[download] Destination: /tmp/x.webm") is None
    assert parse_progress("[ExtractAudio] Destination: /tmp/x.mp3") is None


def test_build_command_targets_the_destination(tmp_path: Path) -> None:
    engine = AcquisitionEngine(audio_format="m4a")

    cmd = engine.build_command(
        SourceReference(VIDEO_URL), tmp_path / "_source.m4a", "yt-dlp", "/opt/ffmpeg"
    )

    assert cmd[cmd.index("-o") + 1] == str(tmp_path / "_source.%(ext)s")
    assert cmd[cmd.index("--audio-format") + 1] == "m4a"
    assert cmd[cmd.index("--ffmpeg-location") + 1] == "/opt/ffmpeg"
    assert "--no-playlist" in cmd


def test_acquire_reports_progress_and_produces_the_file(tmp_path: Path, fake_tools) -> None:
    seen: list[float] = []
    destination = tmp_path / "_source.mp3"

    result = asyncio.run(
        AcquisitionEngine(timeout=20).acquire(
            SourceReference(VIDEO_URL), destination, seen.append, fake_tools.ytdlp, fake_tools.ffmpeg
        )
    )

    assert result == destination
    assert destination.stat().st_size > 0
    assert seen == [10.0, 55.5, 30.0, 100.0]


def test_acquire_failure_discards_partial_output(tmp_path: Path, fake_tools) -> None:
    destination = tmp_path / "_source.mp3"

    with pytest.raises(AcquisitionFailed) as excinfo:
        asyncio.run(
            AcquisitionEngine(timeout=20).acquire(
                SourceReference(VIDEO_URL + "&brokenstream=1"),
                destination,
                lambda _: None,
                fake_tools.ytdlp,
                fake_tools.ffmpeg,
            )
        )

    assert "audio conversion failed" in excinfo.value.output
    assert list(tmp_path.glob("_source.*")) == []
