#!/usr/bin/env python3
"""Cross-execute client sandboxes against conformance-checker sandboxes."""

import argparse
import asyncio
import contextlib
import dataclasses
import itertools
import json
import logging
import re
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only, stdout carries the report) ───────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("sandbox-matrix")

# ── Config ───────────────────────────────────────────────────────────────

CONTAINER_CLI = "container"

# Well-known service port every client opens once it is ready
DEFAULT_PORT = 8545

# Checkers find the client under test through this variable
CLIENT_ADDR_ENV = "CLIENT_ADDR"

SANDBOX_PREFIX = "matrix-"

CLIENT_PREFIX = "clients/"
CHECKER_PREFIX = "checkers/"
SMOKE_PATTERN = "smoke/"

PROBE_INTERVAL = 0.1  # seconds between readiness polls
WAIT_INTERVAL = 0.5  # seconds between checker exit polls
CONNECT_TIMEOUT = 1.0

CLI_TIMEOUT = 30.0
REMOVE_TIMEOUT = 10.0

LogSink = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class MatrixConfig:
    """Everything one matrix run needs. Passed in, never read from globals."""

    cli: str = CONTAINER_CLI
    client_pattern: str = "."
    checker_pattern: str = "."
    client_prefix: str = CLIENT_PREFIX
    checker_prefix: str = CHECKER_PREFIX
    port: int = DEFAULT_PORT
    network: Optional[str] = None
    probe_interval: float = PROBE_INTERVAL
    wait_interval: float = WAIT_INTERVAL
    connect_timeout: float = CONNECT_TIMEOUT
    pairing_timeout: Optional[float] = None
    parallelism: int = 1
    reap_orphans: bool = False


# ── Errors ───────────────────────────────────────────────────────────────


class PairingError(RuntimeError):
    """A failure confined to a single client × checker pairing."""


class SandboxError(PairingError):
    pass


class SandboxCreateError(SandboxError):
    pass


class SandboxStartError(SandboxError):
    pass


class SandboxInspectError(SandboxError):
    pass


class ClientTerminatedError(PairingError):
    def __init__(self, message: str = "terminated unexpectedly"):
        super().__init__(message)


class PairingTimeoutError(PairingError):
    pass


class CatalogError(RuntimeError):
    pass


# ── Sandbox handle ───────────────────────────────────────────────────────


@dataclass
class SandboxState:
    running: bool
    address: Optional[str] = None
    exit_code: Optional[int] = None


@dataclass
class Sandbox:
    """A created sandbox. Owned by exactly one pairing."""

    name: str
    image: str
    role: str
    env: dict[str, str] = field(default_factory=dict)
    address: Optional[str] = None
    running: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def short_id(self) -> str:
        return self.name.rsplit("-", 1)[-1]


# ── Helpers ──────────────────────────────────────────────────────────────


async def _run(cmd: list[str], timeout: float = CLI_TIMEOUT) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except BaseException:
        # Also on cancellation: the child must not outlive its caller
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _strip_cidr(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    return address.split("/", 1)[0] or None


def _parse_inspect(payload: str) -> SandboxState:
    """
    Parse `inspect` JSON into a SandboxState.

    Accepts the Apple Containerization shape (``status``, a ``networks`` list
    with CIDR addresses, ``exitCode``) and the Docker shape (``State.Running``,
    ``State.ExitCode``, ``NetworkSettings``).
    """
    data = json.loads(payload)
    if isinstance(data, list):
        if not data:
            raise ValueError("empty inspect output")
        data = data[0]
    if not isinstance(data, dict):
        raise ValueError(f"unexpected inspect output: {type(data).__name__}")

    state = data.get("State")
    if isinstance(state, dict):
        running = bool(state.get("Running", False))
        exit_code = state.get("ExitCode")
    else:
        running = str(data.get("status", "")).lower() == "running"
        exit_code = data.get("exitCode", data.get("exit_code"))

    address = None
    for net in data.get("networks") or []:
        if isinstance(net, dict) and net.get("address"):
            address = _strip_cidr(net["address"])
            break
    settings = data.get("NetworkSettings")
    if address is None and isinstance(settings, dict):
        address = settings.get("IPAddress") or None
        if address is None:
            for net in (settings.get("Networks") or {}).values():
                if isinstance(net, dict) and net.get("IPAddress"):
                    address = net["IPAddress"]
                    break

    if running:
        exit_code = None
    elif exit_code is not None:
        exit_code = int(exit_code)
    return SandboxState(running=running, address=address, exit_code=exit_code)


def _sandbox_name(role: str) -> str:
    return f"{SANDBOX_PREFIX}{role}-{uuid.uuid4().hex[:8]}"


def _image_names(stdout: str) -> list[str]:
    """First column of `image ls` output, header dropped, tag appended."""
    names = []
    for line in stdout.splitlines():
        cols = line.split()
        if not cols or cols[0] in ("NAME", "REPOSITORY"):
            continue
        ref = cols[0]
        if len(cols) > 1 and ":" not in ref.rsplit("/", 1)[-1]:
            ref = f"{ref}:{cols[1]}"
        names.append(ref)
    return names


def _strip_tag(ref: str) -> str:
    head, sep, tail = ref.rpartition(":")
    if sep and "/" not in tail:
        return head
    return ref


# ── Waiter ───────────────────────────────────────────────────────────────


class SandboxWaiter:
    """Tracks a started sandbox: streams its output and waits for exit."""

    def __init__(self, engine, sandbox: Sandbox, follower=None):
        self._engine = engine
        self._sandbox = sandbox
        self._follower: Optional[asyncio.Task] = follower

    async def wait(
        self, interval: float = WAIT_INTERVAL, sleep: Sleep = asyncio.sleep
    ) -> SandboxState:
        while True:
            state = await self._engine.inspect(self._sandbox)
            if not state.running:
                return state
            await sleep(interval)

    async def close(self):
        task, self._follower = self._follower, None
        if task is None:
            return
        if task.done():
            if not task.cancelled() and task.exception() is not None:
                log.warning(
                    f"Log follower of {self._sandbox.name} failed: {task.exception()}"
                )
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


# ── Engine (container CLI) ───────────────────────────────────────────────


class ContainerEngine:
    """Create, start, inspect and remove sandboxes through the container CLI."""

    def __init__(self, cli: str = CONTAINER_CLI):
        self.cli = cli

    async def version(self) -> str:
        try:
            code, stdout, stderr = await _run([self.cli, "--version"], timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxError(f"{self.cli} unavailable: {e}") from e
        if code != 0:
            raise SandboxError(f"{self.cli} unavailable: {stderr.strip()}")
        return stdout.strip()

    async def create(
        self,
        image: str,
        env: Optional[dict[str, str]] = None,
        network: Optional[str] = None,
        role: str = "sandbox",
    ) -> Sandbox:
        name = _sandbox_name(role)
        cmd = [self.cli, "create", "--name", name]
        if network:
            cmd.extend(["--network", network])
        for key, value in (env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)
        sb = Sandbox(name=name, image=image, role=role, env=dict(env or {}))
        try:
            code, _, stderr = await _run(cmd)
        except asyncio.TimeoutError as e:
            await self.remove(sb)
            raise SandboxCreateError(f"create {image}: timed out") from e
        except OSError as e:
            raise SandboxCreateError(f"create {image}: {e}") from e
        except asyncio.CancelledError:
            # The engine may have registered the name before we gave up
            await asyncio.shield(self.remove(sb))
            raise
        if code != 0:
            raise SandboxCreateError(f"create {image}: {stderr.strip()}")
        return sb

    async def start(
        self, sandbox: Sandbox, log_sink: Optional[LogSink] = None
    ) -> SandboxWaiter:
        try:
            code, _, stderr = await _run([self.cli, "start", sandbox.name])
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxStartError(f"start {sandbox.name}: {e}") from e
        if code != 0:
            raise SandboxStartError(f"start {sandbox.name}: {stderr.strip()}")
        sandbox.running = True
        follower = None
        if log_sink is not None:
            follower = asyncio.create_task(self._follow_logs(sandbox, log_sink))
        return SandboxWaiter(self, sandbox, follower)

    async def _follow_logs(self, sandbox: Sandbox, log_sink: LogSink):
        try:
            proc = await asyncio.create_subprocess_exec(
                self.cli,
                "logs",
                "--follow",
                sandbox.name,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            log.warning(f"Could not follow logs of {sandbox.name}: {e}")
            return
        if proc.stdout is None:
            raise RuntimeError("Log follower has no stdout")
        try:
            async for line in proc.stdout:
                log_sink(line.decode(errors="replace").rstrip("\n"))
            await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    async def inspect(self, sandbox: Sandbox) -> SandboxState:
        try:
            code, stdout, stderr = await _run([self.cli, "inspect", sandbox.name])
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxInspectError(f"inspect {sandbox.name}: {e}") from e
        if code != 0:
            raise SandboxInspectError(f"inspect {sandbox.name}: {stderr.strip()}")
        try:
            state = _parse_inspect(stdout)
        except (ValueError, TypeError) as e:
            raise SandboxInspectError(f"inspect {sandbox.name}: {e}") from e
        sandbox.running = state.running
        if state.address:
            sandbox.address = state.address
        return state

    async def remove(self, sandbox: Sandbox) -> bool:
        """Force-remove a sandbox. Never raises; failures are only logged."""
        try:
            code, _, stderr = await _run(
                [self.cli, "rm", "--force", sandbox.name], timeout=REMOVE_TIMEOUT
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Could not remove {sandbox.name}: {e}")
            return False
        if code != 0:
            log.warning(f"Could not remove {sandbox.name}: {stderr.strip()}")
            return False
        sandbox.running = False
        return True

    async def list_images(self) -> list[str]:
        try:
            code, stdout, stderr = await _run([self.cli, "image", "ls"])
        except (OSError, asyncio.TimeoutError) as e:
            raise CatalogError(f"Error listing images: {e}") from e
        if code != 0:
            raise CatalogError(f"Error listing images: {stderr.strip()}")
        return _image_names(stdout)

    async def list_sandboxes(self) -> list[str]:
        try:
            code, stdout, stderr = await _run([self.cli, "ls", "--all"])
        except (OSError, asyncio.TimeoutError) as e:
            raise SandboxError(f"Error listing sandboxes: {e}") from e
        if code != 0:
            raise SandboxError(f"Error listing sandboxes: {stderr.strip()}")
        names = set()
        for line in stdout.splitlines():
            names.update(t for t in line.split() if t.startswith(SANDBOX_PREFIX))
        return sorted(names)


# ── Image catalog ────────────────────────────────────────────────────────


class ImageCatalog:
    """Split the engine's image list into named clients and checkers."""

    def __init__(self, engine):
        self.engine = engine

    async def select(self, prefix: str, pattern: str) -> dict[str, str]:
        try:
            matcher = re.compile(pattern)
        except re.error as e:
            raise CatalogError(f"Invalid pattern {pattern!r}: {e}") from e
        refs = await self.engine.list_images()

        selected: dict[str, str] = {}
        for ref in refs:
            name = _strip_tag(ref)
            if not name.startswith(prefix):
                continue
            name = name[len(prefix) :]
            if name and matcher.search(name) and name not in selected:
                selected[name] = ref
        return dict(sorted(selected.items()))


# ── Readiness probe ──────────────────────────────────────────────────────


async def _tcp_connect(
    host: str, port: int, timeout: float = CONNECT_TIMEOUT
) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def await_ready(
    engine,
    sandbox: Sandbox,
    port: int = DEFAULT_PORT,
    interval: float = PROBE_INTERVAL,
    sleep: Sleep = asyncio.sleep,
    connect: Callable[[str, int], Awaitable[bool]] = _tcp_connect,
) -> str:
    """
    Poll until the sandbox accepts TCP connections on `port`.

    Returns the address that answered. There is no deadline: the loop ends
    only when the port opens or the sandbox stops running, in which case
    ClientTerminatedError is raised. Inspect failures propagate.
    """
    t0 = time.perf_counter()
    while True:
        state = await engine.inspect(sandbox)
        if not state.running:
            raise ClientTerminatedError()
        if state.address and await connect(state.address, port):
            log.debug(
                f"{sandbox.name} online at {state.address}:{port} "
                f"({time.perf_counter() - t0:.2f}s)"
            )
            return state.address
        await sleep(interval)


# ── Pairing executor ─────────────────────────────────────────────────────


@dataclass
class PairingOutcome:
    client: str
    checker: str
    passed: bool
    reason: Optional[str] = None
    elapsed: float = 0.0

    @property
    def verdict(self) -> str:
        return "pass" if self.passed else "fail"

    def fail_entry(self) -> str:
        return f"{self.checker}: {self.reason}" if self.reason else self.checker


class PairingExecutor:
    """Run one client image against one checker image."""

    def __init__(
        self,
        engine,
        config: Optional[MatrixConfig] = None,
        sleep: Sleep = asyncio.sleep,
        connect: Optional[Callable[[str, int], Awaitable[bool]]] = None,
    ):
        self.engine = engine
        self.config = config or MatrixConfig()
        self.sleep = sleep
        self.connect = connect or self._connect

    async def _connect(self, host: str, port: int) -> bool:
        return await _tcp_connect(host, port, self.config.connect_timeout)

    @contextlib.asynccontextmanager
    async def _sandbox(
        self, image: str, role: str, env: Optional[dict[str, str]] = None
    ):
        sb = await self.engine.create(
            image, env=env, network=self.config.network, role=role
        )
        log.debug(f"Created {role} sandbox {sb.name} ({image})")
        try:
            yield sb
        finally:
            log.debug(f"Removing {role} sandbox {sb.name}")
            await self.engine.remove(sb)

    @contextlib.asynccontextmanager
    async def _started(self, sb: Sandbox, prefix: str):
        def sink(line: str):
            log.debug(f"{prefix} {line}")

        waiter = await self.engine.start(sb, sink)
        try:
            yield waiter
        finally:
            await waiter.close()

    async def run(
        self, client: str, client_image: str, checker: str, checker_image: str
    ) -> PairingOutcome:
        tag = f"[{client} × {checker}]"
        log.info(f"{tag} running client validation")
        t0 = time.perf_counter()
        try:
            exit_code = await self._execute_with_deadline(
                client_image, checker_image, tag
            )
        except PairingError as e:
            elapsed = time.perf_counter() - t0
            log.error(f"{tag} validation failed: {e} ({elapsed:.2f}s)")
            return PairingOutcome(client, checker, False, str(e), elapsed)

        elapsed = time.perf_counter() - t0
        if exit_code == 0:
            log.info(f"{tag} validation passed ({elapsed:.2f}s)")
            return PairingOutcome(client, checker, True, None, elapsed)
        if exit_code is None:
            reason = "exit status unavailable"
        else:
            reason = f"exit code {exit_code}"
        log.error(f"{tag} validation failed: {reason} ({elapsed:.2f}s)")
        return PairingOutcome(client, checker, False, reason, elapsed)

    async def _execute_with_deadline(
        self, client_image: str, checker_image: str, tag: str
    ) -> Optional[int]:
        timeout = self.config.pairing_timeout
        if timeout is None:
            return await self._execute(client_image, checker_image, tag)
        try:
            return await asyncio.wait_for(
                self._execute(client_image, checker_image, tag), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise PairingTimeoutError(f"timed out after {timeout:g}s") from None

    async def _execute(
        self, client_image: str, checker_image: str, tag: str
    ) -> Optional[int]:
        cfg = self.config

        # Unwinds checker first, then client, on every exit path
        async with contextlib.AsyncExitStack() as stack:
            client_sb = await stack.enter_async_context(
                self._sandbox(client_image, "client")
            )
            await stack.enter_async_context(
                self._started(client_sb, f"{tag} client {client_sb.short_id}:")
            )
            address = await await_ready(
                self.engine,
                client_sb,
                port=cfg.port,
                interval=cfg.probe_interval,
                sleep=self.sleep,
                connect=self.connect,
            )

            checker_sb = await stack.enter_async_context(
                self._sandbox(checker_image, "checker", env={CLIENT_ADDR_ENV: address})
            )
            waiter = await stack.enter_async_context(
                self._started(checker_sb, f"{tag} checker {checker_sb.short_id}:")
            )
            state = await waiter.wait(cfg.wait_interval, self.sleep)
            log.debug(f"{tag} checker {checker_sb.name} exited ({state.exit_code})")
            return state.exit_code


# ── Matrix runner ────────────────────────────────────────────────────────


class MatrixRunner:
    """Run every selected client against every selected checker."""

    def __init__(
        self,
        config: Optional[MatrixConfig] = None,
        engine=None,
        sleep: Sleep = asyncio.sleep,
        connect: Optional[Callable[[str, int], Awaitable[bool]]] = None,
    ):
        self.config = config or MatrixConfig()
        self.engine = engine or ContainerEngine(self.config.cli)
        self.catalog = ImageCatalog(self.engine)
        self.executor = PairingExecutor(
            self.engine, self.config, sleep=sleep, connect=connect
        )
        self._results_lock = asyncio.Lock()

    async def select(self) -> tuple[dict[str, str], dict[str, str]]:
        cfg = self.config
        clients = await self.catalog.select(cfg.client_prefix, cfg.client_pattern)
        checkers = await self.catalog.select(cfg.checker_prefix, cfg.checker_pattern)
        log.info(f"Selected {len(clients)} client(s), {len(checkers)} checker(s)")
        return clients, checkers

    async def reap_orphans(self) -> list[str]:
        """Remove sandboxes left behind by an interrupted run."""
        removed = []
        for name in await self.engine.list_sandboxes():
            log.warning(f"Orphan cleanup: removing stale sandbox {name}")
            if await self.engine.remove(Sandbox(name=name, image="", role="orphan")):
                removed.append(name)
        return removed

    async def run_selected(self) -> tuple[dict, bool]:
        if self.config.reap_orphans:
            await self.reap_orphans()
        clients, checkers = await self.select()
        return await self.run(clients, checkers)

    async def run(
        self, clients: dict[str, str], checkers: dict[str, str]
    ) -> tuple[dict, bool]:
        """
        Cross-execute clients × checkers and build the results table.

        Cells run client-major, checker-minor. With parallelism > 1 they may
        finish in any order; the table is still assembled in iteration order.
        """
        cells = list(itertools.product(sorted(clients), sorted(checkers)))
        slots = asyncio.Semaphore(max(1, self.config.parallelism))
        outcomes: dict[tuple[str, str], PairingOutcome] = {}

        async def run_cell(client: str, checker: str):
            async with slots:
                outcome = await self._run_cell(
                    client, clients[client], checker, checkers[checker]
                )
            async with self._results_lock:
                outcomes[(client, checker)] = outcome

        if self.config.parallelism <= 1:
            for client, checker in cells:
                await run_cell(client, checker)
        else:
            await asyncio.gather(*(run_cell(c, k) for c, k in cells))

        results: dict[str, dict[str, list[str]]] = {c: {} for c in sorted(clients)}
        any_failed = False
        for client, checker in cells:
            outcome = outcomes[(client, checker)]
            if outcome.passed:
                results[client].setdefault("pass", []).append(checker)
            else:
                any_failed = True
                results[client].setdefault("fail", []).append(outcome.fail_entry())

        failed = sum(1 for o in outcomes.values() if not o.passed)
        log.info(f"Matrix complete: {len(cells) - failed}/{len(cells)} passed")
        return results, any_failed

    async def _run_cell(
        self, client: str, client_image: str, checker: str, checker_image: str
    ) -> PairingOutcome:
        t0 = time.perf_counter()
        try:
            return await self.executor.run(client, client_image, checker, checker_image)
        except Exception as e:
            log.exception(f"[{client} × {checker}] pairing crashed: {e}")
            reason = str(e) or type(e).__name__
            return PairingOutcome(
                client, checker, False, reason, time.perf_counter() - t0
            )


# ── Result reporter ──────────────────────────────────────────────────────


def format_report(results: dict) -> str:
    return json.dumps(results, indent=2, sort_keys=True)


def _summary(results: dict) -> str:
    passed = sum(len(r.get("pass", [])) for r in results.values())
    failed = sum(len(r.get("fail", [])) for r in results.values())
    return f"{len(results)} client(s), {passed} passed, {failed} failed"


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "matrix",
    instructions=(
        "You can validate client implementations against conformance checkers. "
        "Each client runs in its own sandbox; each checker runs in a second "
        f"sandbox that finds the client through {CLIENT_ADDR_ENV}. "
        "Use catalog to see which clients and checkers a pattern selects, "
        "and validate to cross-execute them into a pass/fail table."
    ),
)

config = MatrixConfig()


@mcp_server.tool()
async def validate(
    client_pattern: str = ".",
    checker_pattern: str = ".",
    parallelism: int = 1,
) -> str:
    """
    Run every matching client against every matching checker.

    Args:
        client_pattern: Regexp selecting client names (default all)
        checker_pattern: Regexp selecting checker names (default all)
        parallelism: Pairings to run at once (default 1, sequential)

    Returns:
        JSON table of passed/failed checkers per client, plus a summary line.
    """
    cfg = dataclasses.replace(
        config,
        client_pattern=client_pattern,
        checker_pattern=checker_pattern,
        parallelism=parallelism,
    )
    try:
        results, any_failed = await MatrixRunner(cfg).run_selected()
    except (CatalogError, SandboxError) as e:
        return f"Error: {e}"
    status = "FAILED" if any_failed else "OK"
    return f"{format_report(results)}\n{status}: {_summary(results)}"


@mcp_server.tool()
async def catalog(client_pattern: str = ".", checker_pattern: str = ".") -> str:
    """
    List the clients and checkers a pair of patterns selects.

    Returns:
        One line per image: role, name and image reference.
    """
    cfg = dataclasses.replace(
        config, client_pattern=client_pattern, checker_pattern=checker_pattern
    )
    try:
        clients, checkers = await MatrixRunner(cfg).select()
    except CatalogError as e:
        return f"Error: {e}"
    lines = [f"client   {name:20s}  {ref}" for name, ref in clients.items()]
    lines += [f"checker  {name:20s}  {ref}" for name, ref in checkers.items()]
    return "\n".join(lines) if lines else "No clients or checkers matched"


# ── Entry point ──────────────────────────────────────────────────────────


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sandbox-matrix",
        description="Cross-execute client sandboxes against conformance checkers.",
    )
    parser.add_argument(
        "--client", default=".", help="Regexp selecting the client(s) to run against"
    )
    parser.add_argument(
        "--checker", default=".", help="Regexp selecting the checkers to run"
    )
    parser.add_argument(
        "--smoke", action="store_true", help="Only run the smoke checkers"
    )
    parser.add_argument(
        "--parallel", type=int, default=1, help="Pairings to run concurrently"
    )
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help="Client service port to probe"
    )
    parser.add_argument(
        "--timeout", type=float, default=None, help="Per-pairing deadline (seconds)"
    )
    parser.add_argument("--network", default=None, help="Network for all sandboxes")
    parser.add_argument("--cli", default=CONTAINER_CLI, help="Container CLI binary")
    parser.add_argument(
        "--reap", action="store_true", help="Remove leftover sandboxes first"
    )
    parser.add_argument(
        "--loglevel",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for system events",
    )
    parser.add_argument(
        "--serve", action="store_true", help="Run as an MCP server over stdio"
    )
    return parser.parse_args(argv)


async def _run_matrix(cfg: MatrixConfig) -> int:
    runner = MatrixRunner(cfg)
    try:
        version = await runner.engine.version()
        log.info(f"Container engine online: {version}")
        results, any_failed = await runner.run_selected()
    except (CatalogError, SandboxError) as e:
        log.critical(f"Failed to validate clients: {e}")
        return 1

    print(f"Validation results:\n{format_report(results)}")
    return 1 if any_failed else 0


def main(argv: Optional[list[str]] = None) -> int:
    global config

    args = _parse_args(argv)
    logging.getLogger().setLevel(args.loglevel)

    config = MatrixConfig(
        cli=args.cli,
        client_pattern=args.client,
        checker_pattern=SMOKE_PATTERN if args.smoke else args.checker,
        port=args.port,
        network=args.network,
        pairing_timeout=args.timeout,
        parallelism=args.parallel,
        reap_orphans=args.reap,
    )
    if args.serve:
        mcp_server.run(transport="stdio")
        return 0
    return asyncio.run(_run_matrix(config))


if __name__ == "__main__":
    sys.exit(main())
