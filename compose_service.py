import os
import subprocess
import time
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

import docker_service as ds


class ProjectAction(str, Enum):
    PULL = "pull"
    UP = "up"
    DOWN = "down"
    RESTART = "restart"


class InvalidProject(ValueError):
    pass


class ComposeError(RuntimeError):
    def __init__(self, step: str, reason: str, output: str):
        super().__init__(f"{step} failed: {reason}\n{output}")
        self.step = step
        self.reason = reason
        self.output = output


class CmdResult(NamedTuple):
    returncode: Optional[int]
    output: str
    timed_out: bool = False


Runner = Callable[[Sequence[str], str, float], CmdResult]


def run_cmd(args: Sequence[str], cwd: str, timeout: float) -> CmdResult:
    """Run a command in ``cwd`` and capture stdout and stderr interleaved."""
    try:
        res = subprocess.run(
            list(args),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        out = e.stdout or ""
        if isinstance(out, bytes):
            out = out.decode("utf-8", errors="replace")
        return CmdResult(None, out, timed_out=True)
    except OSError as e:
        return CmdResult(127, str(e))
    return CmdResult(res.returncode, res.stdout or "")


def project_dir(root: str, name: str) -> str:
    """Resolve a project name to its directory, refusing anything hidden or outside ``root``."""
    if not name or name.startswith(".") or "/" in name or os.sep in name:
        raise InvalidProject("invalid project")
    base = os.path.realpath(root)
    path = os.path.realpath(os.path.join(base, name))
    if os.path.dirname(path) != base:
        raise InvalidProject("invalid project")
    return os.path.join(root, name)


def discover_projects(
    root: str,
    client_factory: Optional[Callable[[], Any]] = None,
    compose_file: str = "docker-compose.yml",
    env_file: str = ".env",
    label: str = ds.COMPOSE_PROJECT_LABEL,
) -> List[Dict[str, Any]]:
    """List compose projects below ``root`` with container counts.

    A directory is a project when it is not dot-prefixed and holds the compose
    file. Counts come from one container listing; when docker is unavailable
    every project reports zero.
    """
    try:
        entries = list(os.scandir(root))
    except OSError as e:
        raise OSError(f"read production root: {e}")

    stats: Dict[str, Dict[str, int]] = {}
    if client_factory is not None:
        client = None
        try:
            client = client_factory()
            stats = ds.compose_project_stats(client, label)
        except Exception as e:
            print(f"[COMPOSE] container listing unavailable: {e}")
            stats = {}
        finally:
            if client is not None:
                client.close()

    out = []
    for e in entries:
        if not e.is_dir(follow_symlinks=False):
            continue
        name = e.name
        if name.startswith("."):
            continue
        d = os.path.join(root, name)
        if not os.path.exists(os.path.join(d, compose_file)):
            continue
        s = stats.get(name) or {}
        out.append({
            "name": name,
            "path": d,
            "hasEnv": os.path.exists(os.path.join(d, env_file)),
            "containerTotal": s.get("total", 0),
            "containerRun": s.get("run", 0),
            "containerStop": s.get("stop", 0),
        })
    out.sort(key=lambda p: p["name"])
    return out


def read_project_file(root: str, name: str, filename: str, label: str) -> Dict[str, str]:
    d = project_dir(root, name)
    path = os.path.join(d, filename)
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
    except OSError as e:
        raise FileNotFoundError(f"read {label}: {e}")
    return {"name": name, "path": path, "text": text}


def _step(runner: Runner, step: str, args: Sequence[str], cwd: str, deadline: float, project: str) -> str:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise ComposeError(step, "deadline exceeded before start", "")
    res = runner(args, cwd, remaining)
    print(f"[COMPOSE] {project} {step} exit={res.returncode}")
    if res.timed_out:
        raise ComposeError(step, f"timed out after {int(remaining)}s", res.output)
    if res.returncode != 0:
        raise ComposeError(step, f"exit status {res.returncode}", res.output)
    return res.output


def run_project_action(
    root: str,
    name: str,
    action: ProjectAction,
    runner: Runner = run_cmd,
    compose_command: Sequence[str] = ("docker", "compose"),
    compose_file: str = "docker-compose.yml",
    timeout: float = 300,
) -> Dict[str, Any]:
    """Run a compose action inside the project directory under one overall deadline.

    ``pull`` pulls images then force-recreates the containers; both outputs are
    returned. If the pull fails the recreate is never attempted.
    """
    action = ProjectAction(action)
    d = project_dir(root, name)
    compose_path = os.path.join(d, compose_file)
    if not os.path.exists(compose_path):
        raise FileNotFoundError(f"compose not found: {compose_path}")

    req = ds.ActionRequest(action, name, int(timeout))
    deadline = time.monotonic() + req.timeout
    base = list(compose_command) + ["-f", compose_file]

    if action is ProjectAction.PULL:
        pull_out = _step(runner, "pull", base + ["pull"], d, deadline, name)
        try:
            up_out = _step(runner, "recreate", base + ["up", "-d", "--force-recreate"], d, deadline, name)
        except ComposeError as e:
            raise ComposeError(e.step, e.reason, pull_out + "\n---\n" + e.output)
        return {
            "ok": True,
            "action": "pull-recreate",
            "project": name,
            "output": pull_out + "\n---\n" + up_out,
        }

    if action is ProjectAction.UP:
        args = base + ["up", "-d"]
    elif action is ProjectAction.DOWN:
        args = base + ["down"]
    else:
        args = base + ["restart"]

    out = _step(runner, action.value, args, d, deadline, name)
    return {"ok": True, "action": action.value, "project": name, "output": out}
