from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional
import os
import time

from docker.errors import NotFound
import uvicorn

import config_service as cs
import docker_service as ds
import compose_service as cps
import log_stream as ls


def _append_error_log(path: str, msg: str):
    try:
        now = time.strftime('%Y-%m-%d %H:%M:%S')
        with open(path, "a") as f:
            f.write(f"[{now}] {msg}\n")
    except OSError as e:
        print(f"[API] error log {path} not writable: {e}")


def _error(status: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": msg})


def _docker_error(op: str, target: str, e: Exception) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=f"{op} {target}: {getattr(e, 'explanation', None) or e}")
    return HTTPException(status_code=500, detail=f"{op} {target}: {e}")


def create_app(
    settings: Optional[cs.Settings] = None,
    docker_factory: Optional[Callable[[], Any]] = None,
    runner: Optional[cps.Runner] = None,
) -> FastAPI:
    settings = settings or cs.load_settings()
    docker_factory = docker_factory or ds.client_factory(settings.docker_timeout)
    runner = runner or cps.run_cmd

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        print(f"[API] listening on http://{settings.host}:{settings.port}")
        print(f"[API] production root {settings.project_root}")
        if not os.path.isdir(settings.project_root):
            print(f"[API] production root missing: {settings.project_root}")
        try:
            client = docker_factory()
            try:
                err = ds.ping(client)
            finally:
                client.close()
        except Exception as e:
            err = str(e)
        if err:
            print(f"[API] docker daemon not reachable: {err}")
        yield
        print("[API] shutting down")

    app = FastAPI(title="Docker Manager API", version=cs.VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.docker_factory = docker_factory
    app.state.runner = runner

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            _append_error_log(settings.error_log, f"{request.method} {request.url.path}: {exc.detail}")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg')}")
        return _error(400, "; ".join(parts) or "invalid request")

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        _append_error_log(settings.error_log, f"{request.method} {request.url.path}: {exc!r}")
        return _error(500, f"internal error: {exc}")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        print(f"[HTTP] {request.method} {request.url.path}")
        response = await call_next(request)
        print(f"[HTTP] {response.status_code} {request.method} {request.url.path}")
        return response

    @app.get("/api/health")
    def health():
        return {"ok": True, "version": cs.VERSION, "time": datetime.now().astimezone().isoformat(timespec="seconds")}

    # Docker

    @app.get("/api/docker/containers")
    def docker_containers():
        client = None
        try:
            client = docker_factory()
            return ds.list_containers(client, all=True, label=settings.compose_label)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        finally:
            if client is not None:
                client.close()

    @app.post("/api/docker/containers/{id}/{action}")
    def docker_container_action(id: str, action: ds.ContainerAction):
        req = ds.ActionRequest(action, id, settings.stop_grace)
        client = None
        try:
            client = docker_factory()
            return ds.run_container_action(client, req)
        except Exception as e:
            raise _docker_error(action.value, id, e)
        finally:
            if client is not None:
                client.close()

    @app.get("/api/docker/containers/{id}/logs/stream")
    async def docker_logs_stream(id: str, tail: Optional[str] = None):
        try:
            session = ls.LogStreamSession(
                docker_factory,
                id,
                tail,
                max_line=settings.max_line_bytes,
                default_tail=settings.default_tail,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        try:
            await session.acquire()
        except Exception as e:
            raise _docker_error("logs", id, e)
        return ls.LogStreamResponse(session)

    # Production (compose projects below the configured root)

    @app.get("/api/production/projects")
    def production_projects():
        try:
            return cps.discover_projects(
                settings.project_root,
                docker_factory,
                compose_file=settings.compose_file,
                env_file=settings.env_file,
                label=settings.compose_label,
            )
        except OSError as e:
            raise HTTPException(status_code=500, detail=str(e))

    def _project_file(name: str, filename: str, label: str):
        try:
            return cps.read_project_file(settings.project_root, name, filename, label)
        except cps.InvalidProject:
            raise HTTPException(status_code=404, detail="not found")
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/api/production/projects/{name}/compose")
    def production_compose_file(name: str):
        return _project_file(name, settings.compose_file, "compose file")

    @app.get("/api/production/projects/{name}/env")
    def production_env_file(name: str):
        return _project_file(name, settings.env_file, settings.env_file)

    @app.post("/api/production/projects/{name}/{action}")
    def production_action(name: str, action: cps.ProjectAction):
        try:
            return cps.run_project_action(
                settings.project_root,
                name,
                action,
                runner=runner,
                compose_command=settings.compose_command,
                compose_file=settings.compose_file,
                timeout=settings.action_timeout,
            )
        except cps.InvalidProject as e:
            raise HTTPException(status_code=400, detail=str(e))
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except cps.ComposeError as e:
            raise HTTPException(status_code=500, detail=str(e))

    return app


def main():
    settings = cs.load_settings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        timeout_graceful_shutdown=settings.shutdown_grace,
    )


if __name__ == "__main__":
    main()
