"""
HTTP front-end built on aiohttp.web.

Routes:
    POST /api/preview                 resolve + match only
    POST /api/runs                    start a run
    GET  /api/runs/{run_id}/events    server-sent progress events
    GET  /api/runs/{run_id}/artifact  download the tagged file
    GET  /api/health                  provisioning status
"""

import asyncio
import json
import logging
from pathlib import Path

from aiohttp import web

from trackgrab import __version__
from trackgrab.api.client import SpotifyCatalogClient
from trackgrab.core.pipeline import Pipeline
from trackgrab.core.run_registry import ArtifactNotReady, RunNotFound, RunRegistry
from trackgrab.exceptions import (
    InvalidSourceReference,
    PipelineError,
    ProvisionError,
)
from trackgrab.media.downloader import Downloader
from trackgrab.models.config import AppConfig
from trackgrab.models.track import SourceReference
from trackgrab.provisioning.provisioner import Provisioner

log = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15

REGISTRY_KEY = web.AppKey("registry", RunRegistry)
PROVISIONER_KEY = web.AppKey("provisioner", Provisioner)


def _json_error(status: int, error: str, reason: str) -> web.Response:
    return web.json_response({"error": error, "reason": reason}, status=status)


async def _read_source(request: web.Request) -> SourceReference:
    """Accepts JSON or form bodies, with either naming convention."""
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise InvalidSourceReference("Request body is not valid JSON.") from None
    else:
        body = dict(await request.post())
    if not isinstance(body, dict):
        raise InvalidSourceReference("Request body must be an object.")
    value = body.get("sourceReference") or body.get("youtubeUrl") or ""
    return SourceReference(str(value))


async def handle_preview(request: web.Request) -> web.Response:
    registry = request.app[REGISTRY_KEY]
    try:
        source = await _read_source(request)
        track = await registry.pipeline.preview(source)
    except InvalidSourceReference as e:
        return _json_error(400, "invalid_source", str(e))
    except PipelineError as e:
        status = 422 if e.user_facing else 502
        return _json_error(status, e.kind, str(e))
    except ProvisionError as e:
        return _json_error(503, e.kind, str(e))
    return web.json_response(track.to_dict())


async def handle_start_run(request: web.Request) -> web.Response:
    registry = request.app[REGISTRY_KEY]
    try:
        source = await _read_source(request)
    except InvalidSourceReference as e:
        return _json_error(400, "invalid_source", str(e))
    run = registry.start_run(source)
    return web.json_response(
        {
            "runId": run.run_id,
            "events": f"/api/runs/{run.run_id}/events",
            "artifact": f"/api/runs/{run.run_id}/artifact",
        },
        status=202,
    )


async def handle_events(request: web.Request) -> web.StreamResponse:
    """
    Streams the run's events as SSE. If the last connected client goes away
    before the terminal event, the run is cancelled.
    """
    registry = request.app[REGISTRY_KEY]
    run_id = request.match_info["run_id"]
    try:
        events = registry.subscribe(run_id)
    except (RunNotFound, KeyError):
        return _json_error(404, "unknown_run", "No such run.")

    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )
    await response.prepare(request)

    queue: asyncio.Queue = asyncio.Queue()

    async def _pump() -> None:
        async for event in events:
            queue.put_nowait(event)
        queue.put_nowait(None)

    pump = asyncio.create_task(_pump())
    finished = False
    registry.add_listener(run_id)
    listening = True
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                # Comment line; lets a vanished client surface as a write error
                await response.write(b": keep-alive\n\n")
                continue
            if event is None:
                break
            await response.write(f"data: {json.dumps(event.to_dict())}\n\n".encode())
            if event.is_terminal:
                finished = True
                break
    except (ConnectionResetError, asyncio.CancelledError):
        remaining = registry.remove_listener(run_id)
        listening = False
        if not finished and remaining == 0:
            log.info(f"[{run_id}] Last progress subscriber disconnected, cancelling run.")
            # Shielded so the cleanup survives the handler's own cancellation
            await asyncio.shield(registry.cancel(run_id))
        elif not finished:
            log.debug(f"[{run_id}] Subscriber left, {remaining} still following.")
        raise
    finally:
        pump.cancel()
        if listening:
            registry.remove_listener(run_id)
    return response


async def handle_artifact(request: web.Request) -> web.StreamResponse:
    registry = request.app[REGISTRY_KEY]
    run_id = request.match_info["run_id"]
    try:
        run = registry.get(run_id)
        artifact = registry.take_artifact(run_id)
    except RunNotFound:
        return _json_error(404, "unknown_run", "No such run.")
    except ArtifactNotReady as e:
        if not run.finished:
            return _json_error(409, "in_progress", "The run has not finished yet.")
        return _json_error(410, run.error_kind or "failed", str(run.error or e))

    try:
        data = await asyncio.to_thread(artifact.path.read_bytes)
    finally:
        await registry.release(run_id)
    log.info(f"[{run_id}] Delivered '{artifact.filename}' ({len(data)} bytes)")
    return web.Response(
        body=data,
        content_type=artifact.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
        },
    )


async def handle_health(request: web.Request) -> web.Response:
    provisioner = request.app[PROVISIONER_KEY]
    registry = request.app[REGISTRY_KEY]
    return web.json_response(
        {
            "version": __version__,
            "runs": len(registry),
            **provisioner.status(),
        }
    )


def create_app(
    config: AppConfig,
    pipeline: Pipeline | None = None,
    provisioner: Provisioner | None = None,
    registry: RunRegistry | None = None,
) -> web.Application:
    """
    Builds the web application. Collaborators are created from ``config``
    unless supplied.
    """
    app = web.Application()
    downloader: Downloader | None = None
    catalog: SpotifyCatalogClient | None = None

    if registry is None:
        if pipeline is None:
            downloader = Downloader()
            catalog = SpotifyCatalogClient(
                config.spotify_client_id, config.spotify_client_secret
            )
            provisioner = provisioner or Provisioner.from_config(
                config, downloader, catalog.authenticator
            )
            pipeline = Pipeline(config, provisioner, catalog, downloader)
        registry = RunRegistry(
            pipeline,
            Path(config.work_dir).expanduser(),
            artifact_ttl_seconds=config.artifact_ttl_seconds,
        )
    app[REGISTRY_KEY] = registry
    app[PROVISIONER_KEY] = provisioner or registry.pipeline.provisioner

    async def on_startup(app: web.Application) -> None:
        await app[PROVISIONER_KEY].start()
        await app[REGISTRY_KEY].start_background_reaper()

    async def on_cleanup(app: web.Application) -> None:
        await app[REGISTRY_KEY].shutdown()
        await app[PROVISIONER_KEY].stop()
        if catalog is not None:
            await catalog.close()
        if downloader is not None:
            await downloader.close()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_post("/api/preview", handle_preview)
    app.router.add_post("/api/runs", handle_start_run)
    app.router.add_get("/api/runs/{run_id}/events", handle_events)
    app.router.add_get("/api/runs/{run_id}/artifact", handle_artifact)
    app.router.add_get("/api/health", handle_health)
    return app


def run_server(config: AppConfig) -> None:
    """Runs the HTTP service until interrupted."""
    app = create_app(config)
    log.info(f"Serving on http://{config.host}:{config.port}")
    web.run_app(app, host=config.host, port=config.port, print=None)
