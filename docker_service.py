import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Union

import docker
from docker.errors import DockerException

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


class ContainerAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"


class ActionRequest(NamedTuple):
    action: Enum
    target: str
    timeout: int


def get_client(timeout: int = 30) -> docker.DockerClient:
    """Create a Docker client using environment config.
    Works against local Docker. If running in a container, mount /var/run/docker.sock.
    Every call made through the client is bounded by ``timeout`` seconds.
    """
    try:
        return docker.from_env(timeout=timeout)
    except DockerException as e:
        raise RuntimeError(f"Failed to connect to Docker daemon: {e}")


def client_factory(timeout: int = 30) -> Callable[[], docker.DockerClient]:
    def _factory() -> docker.DockerClient:
        return get_client(timeout=timeout)
    return _factory


def _rfc3339(ts: Any) -> str:
    try:
        return datetime.fromtimestamp(int(ts)).astimezone().isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def container_record(raw: Dict[str, Any], label: str = COMPOSE_PROJECT_LABEL) -> Dict[str, Any]:
    """Shape one entry of the daemon's container listing for the API."""
    names = raw.get("Names") or []
    name = names[0].lstrip("/") if names else ""
    out = {
        "id": raw.get("Id", ""),
        "name": name,
        "image": raw.get("Image", ""),
        "state": raw.get("State", ""),
        "status": raw.get("Status", ""),
        "created": _rfc3339(raw.get("Created")),
    }
    project = (raw.get("Labels") or {}).get(label)
    if project:
        out["composeProject"] = project
    return out


def list_containers(client: docker.DockerClient, all: bool = True, label: str = COMPOSE_PROJECT_LABEL) -> List[Dict[str, Any]]:
    out = [container_record(c, label) for c in client.api.containers(all=all)]
    out.sort(key=lambda c: (c.get("composeProject", ""), c["name"]))
    return out


def compose_project_stats(client: docker.DockerClient, label: str = COMPOSE_PROJECT_LABEL) -> Dict[str, Dict[str, int]]:
    """Aggregate total/running/stopped counts per compose project label.

    One listing call covers every project.
    """
    stats: Dict[str, Dict[str, int]] = {}
    for c in client.api.containers(all=True):
        project = (c.get("Labels") or {}).get(label)
        if not project:
            continue
        s = stats.setdefault(project, {"total": 0, "run": 0, "stop": 0})
        s["total"] += 1
        if c.get("State") == "running":
            s["run"] += 1
        else:
            s["stop"] += 1
    return stats


def run_container_action(client: docker.DockerClient, req: ActionRequest) -> Dict[str, Any]:
    """Start, stop or restart one container. ``req.timeout`` is the stop grace period."""
    action = ContainerAction(req.action)
    started = time.monotonic()
    if action is ContainerAction.START:
        client.api.start(req.target)
    elif action is ContainerAction.STOP:
        client.api.stop(req.target, timeout=req.timeout)
    else:
        client.api.restart(req.target, timeout=req.timeout)
    print(f"[DOCKER] {action.value} {req.target} took={time.monotonic() - started:.2f}s")
    return {"ok": True}


def docker_tail(tail: str) -> Union[int, str]:
    # docker-py only accepts an int or "all" and maps anything else to "all"
    if tail.isdigit():
        return int(tail)
    return tail


def open_log_stream(client: docker.DockerClient, id_or_name: str, tail: str):
    """Open a following log stream for a container (stdout + stderr, no timestamps).

    Returns docker-py's CancellableStream; iterating yields raw byte chunks and
    ``close()`` shuts the underlying socket down.
    """
    return client.api.logs(
        id_or_name,
        stdout=True,
        stderr=True,
        stream=True,
        follow=True,
        timestamps=False,
        tail=docker_tail(tail),
    )


def ping(client: docker.DockerClient) -> Optional[str]:
    try:
        client.ping()
        return None
    except Exception as e:
        return str(e)
