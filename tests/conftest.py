from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import pytest

import sandbox_matrix as sm


class FakeEngine:
    """In-memory engine with the same create/start/inspect/remove contract."""

    def __init__(
        self,
        exit_codes: Optional[dict[str, int]] = None,
        die_after: Optional[dict[str, int]] = None,
        silent: tuple[str, ...] = (),
        fail_create: tuple[str, ...] = (),
        fail_start: tuple[str, ...] = (),
        fail_inspect: tuple[str, ...] = (),
        fail_remove: tuple[str, ...] = (),
        crash_create: tuple[str, ...] = (),
        checker_polls: int = 1,
        images: tuple[str, ...] = (),
    ):
        self.exit_codes = dict(exit_codes or {})
        self.die_after = dict(die_after or {})
        self.silent = set(silent)
        self.fail_create = set(fail_create)
        self.fail_start = set(fail_start)
        self.fail_inspect = set(fail_inspect)
        self.fail_remove = set(fail_remove)
        self.crash_create = set(crash_create)
        self.checker_polls = checker_polls
        self.images = list(images)

        self.created: list[sm.Sandbox] = []
        self.started: list[str] = []
        self.removed: list[str] = []
        self.inspects: dict[str, int] = {}
        self.connects: list[tuple[str, int]] = []
        self.log_lines: list[str] = []
        self._states: dict[str, sm.SandboxState] = {}
        self._addresses: dict[str, str] = {}
        self._seq = 0

    async def create(self, image, env=None, network=None, role="sandbox"):
        await asyncio.sleep(0)
        if image in self.crash_create:
            raise ValueError(f"engine exploded creating {image}")
        if image in self.fail_create:
            raise sm.SandboxCreateError(f"create {image}: no such image")
        self._seq += 1
        sb = sm.Sandbox(
            name=f"{sm.SANDBOX_PREFIX}{role}-{self._seq:08x}",
            image=image,
            role=role,
            env=dict(env or {}),
        )
        self._addresses[sb.name] = f"10.0.0.{self._seq}"
        self.created.append(sb)
        return sb

    async def start(self, sandbox, log_sink=None):
        await asyncio.sleep(0)
        if sandbox.image in self.fail_start:
            raise sm.SandboxStartError(f"start {sandbox.name}: boom")
        self.started.append(sandbox.name)
        self._states[sandbox.name] = sm.SandboxState(
            running=True, address=self._addresses[sandbox.name]
        )
        if log_sink is not None:
            line = f"{sandbox.image} booting"
            self.log_lines.append(line)
            log_sink(line)
        return sm.SandboxWaiter(self, sandbox)

    async def inspect(self, sandbox):
        await asyncio.sleep(0)
        if sandbox.image in self.fail_inspect:
            raise sm.SandboxInspectError(f"inspect {sandbox.name}: gone")
        polls = self.inspects.get(sandbox.name, 0) + 1
        self.inspects[sandbox.name] = polls
        state = self._states[sandbox.name]

        if sandbox.role == "checker" and polls > self.checker_polls:
            state = sm.SandboxState(
                running=False,
                address=state.address,
                exit_code=self.exit_codes.get(sandbox.image, 0),
            )
        limit = self.die_after.get(sandbox.image)
        if sandbox.role == "client" and limit is not None and polls > limit:
            state = sm.SandboxState(running=False, address=state.address, exit_code=1)
        self._states[sandbox.name] = state
        sandbox.running = state.running
        sandbox.address = state.address
        return state

    async def remove(self, sandbox):
        self.removed.append(sandbox.name)
        if sandbox.image in self.fail_remove:
            return False
        self._states.pop(sandbox.name, None)
        return True

    async def connect(self, host, port):
        self.connects.append((host, port))
        for sb in self.created:
            if self._addresses.get(sb.name) != host:
                continue
            state = self._states.get(sb.name)
            return bool(state and state.running and sb.image not in self.silent)
        return False

    async def list_images(self):
        return list(self.images)

    async def list_sandboxes(self):
        return sorted(
            sb.name for sb in self.created if sb.name not in self.removed
        )

    def sandbox(self, name):
        return next(sb for sb in self.created if sb.name == name)


@pytest.fixture
def fake_sleep():
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def make_runner(fake_sleep):
    def _make(engine: FakeEngine, **overrides: object) -> sm.MatrixRunner:
        cfg = sm.MatrixConfig(**overrides)
        return sm.MatrixRunner(
            cfg, engine=engine, sleep=fake_sleep, connect=engine.connect
        )

    return _make


_FAKE_CONTAINER_SCRIPT = """#!/usr/bin/env python3
import json
import os
import sys
import time


STATE_PATH = os.environ.get("FAKE_CONTAINER_STATE")
if not STATE_PATH:
    print("FAKE_CONTAINER_STATE is required", file=sys.stderr)
    sys.exit(2)


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"containers": {}, "images": [], "exit_codes": {}, "dead": []}


def save_state(state):
    tmp = STATE_PATH + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f)
    os.replace(tmp, STATE_PATH)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def handle_create(args, state):
    name = None
    env = []
    network = None
    i = 0
    while i < len(args):
        tok = args[i]
        if tok in ("--name", "-e", "--network"):
            if i + 1 >= len(args):
                die(f"missing value for {tok}")
            if tok == "--name":
                name = args[i + 1]
            elif tok == "-e":
                env.append(args[i + 1])
            else:
                network = args[i + 1]
            i += 2
            continue
        break
    if i >= len(args) or not name:
        die("invalid create command")
    image = args[i]
    if image.split(":")[0] not in state["images"]:
        die(f"no such image: {image}")
    state["containers"][name] = {
        "image": image,
        "env": env,
        "network": network,
        "status": "created",
    }
    state.setdefault("history", []).append(["create", name, image, env])
    save_state(state)
    # Registered but the CLI has not returned yet
    time.sleep(state.get("create_delay", 0))
    print(name)
    return 0


def handle_start(name, state):
    info = state["containers"].get(name)
    if info is None:
        die(f"no such container: {name}")
    image = info["image"].split(":")[0]
    if image in state.get("exit_codes", {}):
        info["status"] = "stopped"
        info["exitCode"] = state["exit_codes"][image]
    elif image in state.get("dead", []):
        info["status"] = "stopped"
        info["exitCode"] = 1
    else:
        info["status"] = "running"
    save_state(state)
    return 0


def handle_inspect(name, state):
    info = state["containers"].get(name)
    if info is None:
        die(f"no such container: {name}")
    out = {
        "status": info["status"],
        "configuration": {"id": name, "image": info["image"], "env": info["env"]},
        "networks": [],
    }
    if info["status"] != "created":
        out["networks"].append({"network": "default", "address": "127.0.0.1/24"})
    if "exitCode" in info:
        out["exitCode"] = info["exitCode"]
    print(json.dumps([out]))
    return 0


def main():
    argv = sys.argv[1:]
    if not argv:
        die("missing command")
    state = load_state()
    cmd = argv[0]

    if cmd == "--version":
        print("container CLI version 0.0.0-fake")
        return 0

    if cmd == "create":
        return handle_create(argv[1:], state)

    if cmd == "start":
        return handle_start(argv[-1], state)

    if cmd == "inspect":
        return handle_inspect(argv[-1], state)

    if cmd == "logs":
        info = state["containers"].get(argv[-1])
        if info is None:
            die(f"no such container: {argv[-1]}")
        print(f"{info['image']} booting")
        return 0

    if cmd == "rm":
        name = argv[-1]
        state.setdefault("history", []).append(["rm", name])
        if name in state["containers"]:
            del state["containers"][name]
        save_state(state)
        return 0

    if cmd == "ls":
        print("ID IMAGE STATE")
        for name, info in sorted(state["containers"].items()):
            print(f"{name} {info['image']} {info['status']}")
        return 0

    if cmd == "image":
        if len(argv) < 2 or argv[1] != "ls":
            die("unsupported image subcommand")
        print("NAME TAG DIGEST")
        for name in sorted(state["images"]):
            print(f"{name} latest sha256:0123456789ab")
        return 0

    die(f"unsupported command: {cmd}")


if __name__ == "__main__":
    sys.exit(main())
"""


@pytest.fixture
def mock_container_cli(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake_container = bin_dir / "container"
    fake_container.write_text(_FAKE_CONTAINER_SCRIPT)
    fake_container.chmod(0o755)

    state_file = tmp_path / "fake-container-state.json"

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_CONTAINER_STATE", str(state_file))

    return {"tmp_path": tmp_path, "state_file": state_file}


def write_cli_state(
    state_file: Path,
    images: list[str],
    exit_codes: Optional[dict[str, int]] = None,
    dead: Optional[list[str]] = None,
    containers: Optional[dict[str, dict]] = None,
    create_delay: float = 0,
) -> None:
    state = {
        "containers": containers or {},
        "images": images,
        "exit_codes": exit_codes or {},
        "dead": dead or [],
        "create_delay": create_delay,
    }
    state_file.write_text(json.dumps(state))


def read_cli_state(state_file: Path) -> dict:
    return json.loads(state_file.read_text())
