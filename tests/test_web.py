from __future__ import annotations

import asyncio
import json
from pathlib import Path

from aiohttp import test_utils

from fakes import VIDEO_URL, FakeCatalog, make_pipeline
from trackgrab.core.run_registry import RunRegistry
from trackgrab.web import server
from trackgrab.web.server import create_app


def _serve(tmp_path: Path, pipeline, scenario):
    registry = RunRegistry(pipeline, tmp_path / "runs", artifact_ttl_seconds=60)
    app = create_app(pipeline.config, registry=registry)

    async def main():
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            return await scenario(client, registry)

    return asyncio.run(main())


def _parse_sse(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


async def _start(client, source: str = VIDEO_URL) -> dict:
    resp = await client.post("/api/runs", json={"sourceReference": source})
    assert resp.status == 202
    return await resp.json()


def test_full_run_over_http(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        started = await _start(client)
        events_resp = await client.get(started["events"])
        assert events_resp.headers["Content-Type"].startswith("text/event-stream")
        events = _parse_sse(await events_resp.text())

        artifact = await client.get(started["artifact"])
        body = await artifact.read()
        again = await client.get(started["artifact"])
        return started, events, artifact, body, again.status, len(registry)

    started, events, artifact, body, second_status, live_runs = _serve(tmp_path, pipeline, scenario)

    assert events[0]["stage"] == "created"
    assert events[-1]["type"] == "done"
    assert events[-1]["artifact"] == "Song Title.mp3"
    assert all(e["runId"] == started["runId"] for e in events)
    assert artifact.status == 200
    assert artifact.headers["Content-Type"] == "audio/mpeg"
    assert 'filename="Song Title.mp3"' in artifact.headers["Content-Disposition"]
    assert body
    assert second_status == 404
    assert live_runs == 0


def test_concurrent_artifact_requests_deliver_once(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        started = await _start(client)
        await registry.wait(started["runId"])
        first, second = await asyncio.gather(
            client.get(started["artifact"]), client.get(started["artifact"])
        )
        return sorted([first.status, second.status]), len(registry)

    statuses, live_runs = _serve(tmp_path, pipeline, scenario)

    assert statuses == [200, 404]
    assert live_runs == 0


def test_form_bodies_and_legacy_field_name_are_accepted(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        resp = await client.post("/api/runs", data={"youtubeUrl": VIDEO_URL})
        payload = await resp.json()
        await registry.wait(payload["runId"])
        return resp.status, registry.get(payload["runId"]).succeeded

    assert _serve(tmp_path, pipeline, scenario) == (202, True)


def test_blank_source_is_rejected(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        blank = await client.post("/api/runs", json={"sourceReference": "   "})
        missing = await client.post("/api/preview", json={})
        return blank.status, (await blank.json())["error"], missing.status, len(registry)

    assert _serve(tmp_path, pipeline, scenario) == (400, "invalid_source", 400, 0)


def test_failed_run_reports_error_and_has_no_artifact(tmp_path: Path, fake_tools) -> None:
    pipeline = make_pipeline(tmp_path, fake_tools, FakeCatalog(no_match=True))

    async def scenario(client, registry):
        started = await _start(client)
        events = _parse_sse(await (await client.get(started["events"])).text())
        artifact = await client.get(started["artifact"])
        return events, artifact.status, await artifact.json()

    events, status, payload = _serve(tmp_path, pipeline, scenario)

    assert events[-1]["type"] == "error"
    assert events[-1]["error"] == "no_match"
    assert events[-1]["failedStage"] == "matching_catalog"
    assert status == 410
    assert payload["error"] == "no_match"


def test_artifact_before_completion_is_a_conflict(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        started = await _start(client, VIDEO_URL + "&slow=1")
        resp = await client.get(started["artifact"])
        return resp.status

    assert _serve(tmp_path, pipeline, scenario) == 409


def test_unknown_run_is_not_found(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        events = await client.get("/api/runs/does-not-exist/events")
        artifact = await client.get("/api/runs/does-not-exist/artifact")
        return events.status, artifact.status

    assert _serve(tmp_path, pipeline, scenario) == (404, 404)


def test_disconnecting_subscriber_cancels_the_run(tmp_path: Path, pipeline, fake_tools, monkeypatch) -> None:
    monkeypatch.setattr(server, "HEARTBEAT_SECONDS", 0.1)
    pid_file = fake_tools.state_dir / "slow.pid"

    async def scenario(client, registry):
        started = await _start(client, VIDEO_URL + "&slow=1")
        run = registry.get(started["runId"])
        resp = await client.get(started["events"])
        for _ in range(400):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        await resp.content.readline()
        resp.close()
        for _ in range(200):
            if run.finished:
                break
            await asyncio.sleep(0.05)
        return run

    run = _serve(tmp_path, pipeline, scenario)

    assert run.error_kind == "cancelled"
    assert not run.work_dir.exists()


def test_run_survives_while_another_subscriber_follows(tmp_path: Path, pipeline, fake_tools, monkeypatch) -> None:
    monkeypatch.setattr(server, "HEARTBEAT_SECONDS", 0.1)
    pid_file = fake_tools.state_dir / "slow.pid"

    async def scenario(client, registry):
        started = await _start(client, VIDEO_URL + "&slow=1")
        run = registry.get(started["runId"])
        leaving = await client.get(started["events"])
        staying = await client.get(started["events"])
        for _ in range(400):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        await leaving.content.readline()
        await staying.content.readline()
        leaving.close()
        # Several heartbeats, enough for the server to notice the closed stream
        await asyncio.sleep(1.0)
        still_running = not run.finished
        staying.close()
        for _ in range(200):
            if run.finished:
                break
            await asyncio.sleep(0.05)
        return still_running, run

    still_running, run = _serve(tmp_path, pipeline, scenario)

    assert still_running
    assert run.error_kind == "cancelled"
    assert not run.work_dir.exists()


def test_preview_endpoint(tmp_path: Path, pipeline, fake_tools) -> None:
    async def scenario(client, registry):
        ok = await client.post("/api/preview", json={"sourceReference": VIDEO_URL})
        gone = await client.post("/api/preview", json={"sourceReference": VIDEO_URL + "&unavailable=1"})
        return ok.status, await ok.json(), gone.status, await gone.json()

    status, track, gone_status, gone = _serve(tmp_path, pipeline, scenario)

    assert status == 200
    assert track == {
        "title": "Song Title",
        "artist": "Some Artist, Guest",
        "artists": ["Some Artist", "Guest"],
        "album": "Some Album",
        "cover": "https://i.scdn.co/image/cover",
    }
    assert gone_status == 422
    assert gone["error"] == "source_unresolvable"


def test_preview_without_match_is_unprocessable(tmp_path: Path, fake_tools) -> None:
    pipeline = make_pipeline(tmp_path, fake_tools, FakeCatalog(no_match=True))

    async def scenario(client, registry):
        resp = await client.post("/api/preview", json={"sourceReference": VIDEO_URL})
        return resp.status, await resp.json()

    status, payload = _serve(tmp_path, pipeline, scenario)

    assert status == 422
    assert payload == {"error": "no_match", "reason": "Could not identify this track."}


def test_health_reports_provisioning(tmp_path: Path, pipeline) -> None:
    async def scenario(client, registry):
        resp = await client.get("/api/health")
        return resp.status, await resp.json()

    status, payload = _serve(tmp_path, pipeline, scenario)

    assert status == 200
    assert payload["tools"]["yt-dlp"]["ready"] is True
    assert payload["tools"]["ffmpeg"]["ready"] is True
    assert payload["runs"] == 0
