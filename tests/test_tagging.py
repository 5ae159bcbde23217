from __future__ import annotations

import asyncio
from pathlib import Path

import aiohttp
import pytest
from aiohttp import test_utils, web
from mutagen.easyid3 import EasyID3

from fakes import FakeArtworkDownloader, sample_track
from trackgrab.exceptions import ArtworkUnavailable, MuxFailed
from trackgrab.media.downloader import Downloader
from trackgrab.media.integrity import FileIntegrityChecker
from trackgrab.media.muxer import TaggingStage, expected_tags


def _inputs(tmp_path: Path) -> tuple[Path, Path]:
    audio = tmp_path / "_source.mp3"
    audio.write_bytes(b"\xff\xfb" + b"\x00" * 1024)
    cover = tmp_path / "_cover.jpg"
    cover.write_bytes(b"\xff\xd8\xff\xe0" + b"\x00" * 64)
    return audio, cover


def test_expected_tags_join_all_artists() -> None:
    assert expected_tags(sample_track()) == {
        "title": "Song Title",
        "artist": "Some Artist, Guest",
        "album": "Some Album",
    }


def test_build_command_copies_streams_and_sets_tags(tmp_path: Path) -> None:
    audio, cover = _inputs(tmp_path)
    stage = TaggingStage(FakeArtworkDownloader())

    cmd = stage.build_command("ffmpeg", audio, cover, sample_track(), tmp_path / "Song Title.mp3")

    assert cmd[cmd.index("-c") + 1] == "copy"
    assert cmd.count("-i") == 2
    assert "title=Song Title" in cmd
    assert "artist=Some Artist, Guest" in cmd
    assert "album=Some Album" in cmd
    assert cmd[cmd.index("-id3v2_version") + 1] == "3"
    assert cmd[-1] == str(tmp_path / "Song Title.mp3")


def test_m4a_marks_the_cover_as_attached_picture(tmp_path: Path) -> None:
    audio, cover = _inputs(tmp_path)
    stage = TaggingStage(FakeArtworkDownloader(), audio_format="m4a")

    cmd = stage.build_command("ffmpeg", audio, cover, sample_track(), tmp_path / "x.m4a")

    assert cmd[cmd.index("-disposition:v:0") + 1] == "attached_pic"


def test_mux_produces_a_tagged_file(tmp_path: Path, fake_tools) -> None:
    audio, cover = _inputs(tmp_path)
    output = tmp_path / "Song Title.mp3"

    asyncio.run(
        TaggingStage(FakeArtworkDownloader()).mux(
            fake_tools.ffmpeg, audio, cover, sample_track(), output
        )
    )

    tags = EasyID3(str(output))
    assert tags["title"] == ["Song Title"]
    assert tags["artist"] == ["Some Artist, Guest"]
    assert tags["album"] == ["Some Album"]


def test_mux_failure_leaves_no_output(tmp_path: Path, fake_tools) -> None:
    audio, cover = _inputs(tmp_path)
    output = tmp_path / "Broken Mux.mp3"

    with pytest.raises(MuxFailed) as excinfo:
        asyncio.run(
            TaggingStage(FakeArtworkDownloader()).mux(
                fake_tools.ffmpeg, audio, cover, sample_track(title="Broken Mux"), output
            )
        )

    assert "opening encoder" in excinfo.value.output
    assert not output.exists()


def test_fetch_artwork_writes_the_cover(tmp_path: Path) -> None:
    downloader = FakeArtworkDownloader()
    destination = tmp_path / "_cover.jpg"

    asyncio.run(TaggingStage(downloader).fetch_artwork(sample_track(), destination))

    assert destination.read_bytes() == downloader.payload
    assert downloader.requested == ["https://i.scdn.co/image/cover"]


@pytest.mark.parametrize(
    "downloader, track",
    [
        (FakeArtworkDownloader(), sample_track(artwork_url=None)),
        (FakeArtworkDownloader(error=aiohttp.ClientConnectionError("refused")), sample_track()),
        (FakeArtworkDownloader(error=asyncio.TimeoutError()), sample_track()),
        (FakeArtworkDownloader(payload=b""), sample_track()),
    ],
)
def test_fetch_artwork_failures(tmp_path: Path, downloader, track) -> None:
    with pytest.raises(ArtworkUnavailable):
        asyncio.run(TaggingStage(downloader).fetch_artwork(track, tmp_path / "_cover.jpg"))


def test_fetch_artwork_does_not_retry_server_errors(tmp_path: Path) -> None:
    hits: list[str] = []

    async def cover(request: web.Request) -> web.Response:
        hits.append(request.path)
        return web.Response(status=503)

    async def _fetch() -> None:
        app = web.Application()
        app.router.add_get("/cover.jpg", cover)
        downloader = Downloader(base_delay=0.01)
        async with test_utils.TestServer(app) as server:
            track = sample_track(artwork_url=str(server.make_url("/cover.jpg")))
            try:
                await TaggingStage(downloader).fetch_artwork(track, tmp_path / "_cover.jpg")
            finally:
                await downloader.close()

    with pytest.raises(ArtworkUnavailable):
        asyncio.run(_fetch())
    assert hits == ["/cover.jpg"]
    assert not (tmp_path / "_cover.jpg").exists()


def test_integrity_checker_reads_and_checks_tags(tmp_path: Path) -> None:
    path = tmp_path / "tagged.mp3"
    path.write_bytes(b"\x00" * 256)
    tags = EasyID3()
    tags["title"] = "Halo"
    tags["artist"] = "Beyonce"
    tags["album"] = "I Am... Sasha Fierce"
    tags.save(str(path))

    assert FileIntegrityChecker.read_tags(str(path))["title"] == ["Halo"]
    assert FileIntegrityChecker.check_tags(str(path), {"title": "Halo", "artist": "Beyonce"})
    assert not FileIntegrityChecker.check_tags(str(path), {"album": "Other"})


def test_integrity_checker_handles_untagged_files(tmp_path: Path) -> None:
    path = tmp_path / "plain.mp3"
    path.write_bytes(b"\x00" * 256)

    assert FileIntegrityChecker.read_tags(str(path)) == {}
    assert not FileIntegrityChecker.check_tags(str(path), {"title": "Halo"})
    assert FileIntegrityChecker.read_tags(str(tmp_path / "missing.flac")) == {}
