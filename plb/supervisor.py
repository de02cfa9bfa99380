from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Callable

import docker
from docker.errors import ContainerError, DockerException, NotFound

from . import db
from .errors import ApplyError, ProcessStartError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessHandle:
    pid: int | None
    container_id: str | None = None

    def describe(self) -> str:
        if self.container_id:
            return f"container {self.container_id[:12]} (PID {self.pid})"
        return f"PID {self.pid}"


class ProcessManager:
    """What the supervisor needs from whatever actually runs HAProxy."""

    def start(self, config_path: str) -> ProcessHandle:
        raise NotImplementedError

    def reload(self, config_path: str, old: ProcessHandle) -> ProcessHandle:
        raise NotImplementedError

    def is_running(self, handle: ProcessHandle) -> bool:
        raise NotImplementedError

    def validate(self, config_path: str) -> tuple[bool, str]:
        return True, "not checked"


class HaproxyProcessManager(ProcessManager):
    """Runs HAProxy as a child process and reloads with `-sf <old pid>`.

    A freshly spawned instance is given settle_s to fail (bad bind, bad
    config) before it is reported as started.
    """

    def __init__(
        self,
        binary: str = "haproxy",
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        settle_s: float = 0.2,
    ):
        self.binary = binary
        self._popen = popen
        self.settle_s = settle_s
        self._procs: dict[int, subprocess.Popen] = {}
        self._reaped: set[int] = set()

    def _spawn(self, args: list[str]) -> subprocess.Popen:
        proc = self._popen(args)
        # Forget instances that already drained and exited.
        for pid, p in list(self._procs.items()):
            if p.poll() is not None:
                del self._procs[pid]
                self._reaped.add(pid)
        self._reaped.discard(proc.pid)
        self._procs[proc.pid] = proc
        return proc

    def _exit_code(self, proc: subprocess.Popen) -> int | None:
        """Exit code if proc died within the settle window, else None."""
        try:
            return proc.wait(timeout=self.settle_s)
        except subprocess.TimeoutExpired:
            return None

    def start(self, config_path: str) -> ProcessHandle:
        try:
            proc = self._spawn([self.binary, "-f", config_path])
        except OSError as e:
            raise ProcessStartError(f"Cannot start {self.binary}: {e}") from e
        rc = self._exit_code(proc)
        if rc is not None:
            raise ProcessStartError(f"{self.binary} exited with code {rc} right after start")
        return ProcessHandle(pid=proc.pid)

    def reload(self, config_path: str, old: ProcessHandle) -> ProcessHandle:
        try:
            proc = self._spawn([self.binary, "-f", config_path, "-sf", str(old.pid)])
        except OSError as e:
            raise ApplyError(f"Cannot reload {self.binary}: {e}") from e
        rc = self._exit_code(proc)
        if rc is not None:
            raise ApplyError(f"{self.binary} exited with code {rc} during reload, PID {old.pid} keeps serving")
        return ProcessHandle(pid=proc.pid)

    def is_running(self, handle: ProcessHandle) -> bool:
        if handle.pid is None or handle.pid in self._reaped:
            return False
        proc = self._procs.get(handle.pid)
        if proc is not None:
            return proc.poll() is None
        try:
            os.kill(handle.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def validate(self, config_path: str) -> tuple[bool, str]:
        try:
            res = subprocess.run([self.binary, "-c", "-f", config_path], capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            return False, f"{type(e).__name__}: {e}"
        out = (res.stdout + res.stderr).strip()
        return res.returncode == 0, out or f"exit code {res.returncode}"


HAPROXY_CONFIG_DIR = "/usr/local/etc/haproxy"


class DockerProcessManager(ProcessManager):
    """Runs HAProxy in a container in master-worker mode.

    The config directory is bind-mounted rather than the file itself: the
    artifact is replaced by rename, which a single-file mount would not see.
    Reload is SIGUSR2 to the master process.
    """

    def __init__(self, image: str, name: str = "plb-haproxy", client: docker.DockerClient | None = None):
        self.image = image
        self.name = name
        self._docker = client

    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    def _mount(self, config_path: str) -> tuple[dict[str, dict[str, str]], str]:
        cfg = os.path.abspath(config_path)
        volumes = {os.path.dirname(cfg): {"bind": HAPROXY_CONFIG_DIR, "mode": "ro"}}
        return volumes, f"{HAPROXY_CONFIG_DIR}/{os.path.basename(cfg)}"

    def _handle(self, container) -> ProcessHandle:
        container.reload()
        return ProcessHandle(pid=container.attrs.get("State", {}).get("Pid"), container_id=container.id)

    def start(self, config_path: str) -> ProcessHandle:
        volumes, inner = self._mount(config_path)
        try:
            self.replace_stale()
            container = self._client().containers.run(
                self.image,
                command=["haproxy", "-W", "-db", "-f", inner],
                detach=True,
                name=self.name,
                volumes=volumes,
                network_mode="host",
                labels={"plb.role": "haproxy"},
                # Liveness is handled by the supervisor; keep Docker's restart policy out of it.
                restart_policy={"Name": "no"},
            )
            return self._handle(container)
        except DockerException as e:
            raise ProcessStartError(f"Cannot start HAProxy container from {self.image}: {e}") from e

    def reload(self, config_path: str, old: ProcessHandle) -> ProcessHandle:
        try:
            container = self._client().containers.get(old.container_id)
            container.kill(signal="SIGUSR2")
            return self._handle(container)
        except DockerException as e:
            raise ApplyError(f"Cannot reload HAProxy container: {e}") from e

    def is_running(self, handle: ProcessHandle) -> bool:
        if not handle.container_id:
            return False
        try:
            container = self._client().containers.get(handle.container_id)
            container.reload()
            return container.status == "running"
        except NotFound:
            return False
        except DockerException as e:
            # State unknown; reporting it dead would start a second container.
            logger.warning("Cannot inspect container %s: %s", handle.container_id[:12], e)
            return True

    def replace_stale(self) -> None:
        """Remove a leftover container with our name from a previous run."""
        try:
            self._client().containers.get(self.name).remove(force=True)
        except NotFound:
            return

    def validate(self, config_path: str) -> tuple[bool, str]:
        volumes, inner = self._mount(config_path)
        try:
            out = self._client().containers.run(
                self.image, command=["haproxy", "-c", "-f", inner], volumes=volumes, remove=True
            )
        except ContainerError as e:
            return False, str(e)
        except DockerException as e:
            return False, f"{type(e).__name__}: {e}"
        return True, (out or b"").decode("utf-8", "replace").strip()


class ProcessSupervisor:
    """Owns the HAProxy lifecycle: first start, then graceful reloads."""

    def __init__(self, manager: ProcessManager, validate_before_reload: bool = False, scope: str | None = None):
        self.manager = manager
        self.validate_before_reload = validate_before_reload
        self.scope = scope
        self.handle: ProcessHandle | None = None
        # The instance the current one took over from; it may still be draining.
        self.previous: ProcessHandle | None = None
        self.restarts = 0

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle else None

    def ensure_started(self, config_path: str) -> bool:
        """Start HAProxy unless already started. Raises ProcessStartError."""
        if self.handle is not None:
            return False
        self.handle = self.manager.start(config_path)
        db.log_event("INFO", f"HAProxy started, {self.handle.describe()}", scope=self.scope)
        return True

    def reload(self, config_path: str) -> bool:
        """Hand config_path to a new instance that takes over from the old one.

        Failures are journaled and reported as False; the old instance keeps
        serving its configuration and stays the current handle.
        """
        if self.handle is None:
            db.log_event("ERROR", "Reload requested before HAProxy was started", scope=self.scope)
            return False
        if self.validate_before_reload:
            ok, msg = self.manager.validate(config_path)
            if not ok:
                db.log_event("ERROR", f"Config check failed, not reloading: {msg}", scope=self.scope)
                return False
        try:
            new = self.manager.reload(config_path, self.handle)
        except ApplyError as e:
            db.log_event("ERROR", f"HAProxy reload failed: {e}", scope=self.scope)
            return False
        if new != self.handle:
            self.previous = self.handle
        self.handle = new
        db.log_event("INFO", f"HAProxy reloaded, {self.handle.describe()}", scope=self.scope)
        return True

    def is_running(self) -> bool:
        return self.handle is not None and self.manager.is_running(self.handle)

    def ensure_alive(self, config_path: str) -> bool:
        """Restart HAProxy if it died outside of a reload. Returns True if restarted.

        If the instance the dead one took over from is still up, the
        replacement is a reload against it, so no instance is left orphaned.
        """
        if self.handle is None or self.manager.is_running(self.handle):
            return False
        dead = self.handle
        survivor = self.previous if self.previous is not None and self.manager.is_running(self.previous) else None
        if survivor is None:
            db.log_event("WARN", f"HAProxy {dead.describe()} is gone, restarting", scope=self.scope)
            self.handle = self.manager.start(config_path)
            self.previous = None
        else:
            db.log_event(
                "WARN",
                f"HAProxy {dead.describe()} is gone, taking over from {survivor.describe()}",
                scope=self.scope,
            )
            try:
                self.handle = self.manager.reload(config_path, survivor)
            except ApplyError as e:
                self.handle, self.previous = survivor, None
                db.log_event("ERROR", f"HAProxy takeover failed, {survivor.describe()} keeps serving: {e}", scope=self.scope)
                return False
            self.previous = survivor
        self.restarts += 1
        db.log_event("INFO", f"HAProxy restarted, {self.handle.describe()}", scope=self.scope)
        return True


def build_manager(kind: str, binary: str = "haproxy", image: str = "haproxy:2.8") -> ProcessManager:
    if kind == "docker":
        return DockerProcessManager(image=image)
    if kind == "subprocess":
        return HaproxyProcessManager(binary=binary)
    raise ValueError(f"Unknown process manager {kind!r} (expected subprocess|docker)")
