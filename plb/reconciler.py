from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable

from . import db
from .errors import PlbError, StoreError, TreeBuildError
from .render import RenderOptions, render
from .settings import Settings
from .snapshot import ClusterSnapshot, build_snapshot
from .store import CoordinationStore, WatchEvent
from .supervisor import ProcessSupervisor
from .tree import TreeMirror, TreeWatcher

logger = logging.getLogger(__name__)


class LoopStopped(Exception):
    """stop() was called while a cycle was still in progress."""


class LoopState(str, Enum):
    AWAITING_LEADER = "awaiting_leader"
    RECONCILING = "reconciling"
    IDLE = "idle"
    STOPPED = "stopped"


def write_config(path: str, text: str, mode: int = 0o644) -> None:
    """Replace the artifact atomically so HAProxy never reads a partial file."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".plb-", suffix=".cfg", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


class ReconcileLoop:
    """Keeps the HAProxy config in step with the cluster recorded under scope_path."""

    def __init__(
        self,
        store: CoordinationStore,
        supervisor: ProcessSupervisor,
        scope_path: str,
        config_path: str,
        render_options: RenderOptions = RenderOptions(),
        leader_recheck_s: float = 5.0,
        liveness_interval_s: float = 10.0,
        max_build_retries: int = 5,
        backoff_base_s: float = 0.5,
        watcher: TreeWatcher | None = None,
        sleep: Callable[[float], Any] | None = None,
    ):
        self.store = store
        self.supervisor = supervisor
        self.scope_path = scope_path.rstrip("/")
        self.scope = self.scope_path.rsplit("/", 1)[-1]
        self.leader_path = f"{self.scope_path}/leader"
        self.config_path = config_path
        self.render_options = render_options
        self.leader_recheck_s = leader_recheck_s
        self.liveness_interval_s = liveness_interval_s
        self.max_build_retries = max(0, int(max_build_retries))
        self.backoff_base_s = backoff_base_s
        self.watcher = watcher or TreeWatcher(store, self.scope_path)

        self._lock = Lock()
        self._stop = Event()
        # Backoff waits on the stop event so stop() cuts it short.
        self._sleep = sleep or self._stop.wait
        self._wake: Event | None = None
        self._thr: Thread | None = None
        self._mirror: TreeMirror | None = None

        self.state = LoopState.AWAITING_LEADER
        self.current_config: str | None = None
        self.pending_config: str | None = None
        self.snapshot: ClusterSnapshot | None = None
        self.cycles = 0
        self.applies = 0
        self.last_applied_at: str | None = None
        self.last_error: str | None = None
        self.fatal: BaseException | None = None

    @classmethod
    def from_settings(cls, store: CoordinationStore, supervisor: ProcessSupervisor, s: Settings) -> "ReconcileLoop":
        return cls(
            store,
            supervisor,
            scope_path=s.scope_path,
            config_path=s.config_path,
            render_options=RenderOptions.from_settings(s),
            leader_recheck_s=s.leader_recheck_s,
            liveness_interval_s=s.liveness_interval_s,
            max_build_retries=s.max_build_retries,
            backoff_base_s=s.backoff_base_s,
        )

    # Thread control

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="plb-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            wake, mirror = self._wake, self._mirror
        if wake is not None:
            wake.set()
        if mirror is not None:
            mirror.signal.fire(WatchEvent(path="", kind="STOPPED"))

    def join(self, timeout: float | None = None) -> None:
        if self._thr is not None:
            self._thr.join(timeout)

    def _loop(self) -> None:
        try:
            self.run()
        except Exception as e:
            self.fatal = e
            logger.critical("Reconciler stopped: %s: %s", type(e).__name__, e)

    # State machine

    def _set_state(self, state: LoopState) -> None:
        with self._lock:
            self.state = state

    def _backoff(self, attempt: int) -> None:
        self._sleep(min(30.0, self.backoff_base_s * (2 ** attempt)))

    def wait_for_leader(self) -> bool:
        """Block until the leader record exists. False if stopped first."""
        self._set_state(LoopState.AWAITING_LEADER)
        logger.info("Waiting until leader node %s appears...", self.leader_path)
        failures = 0
        appeared = Event()
        armed = False
        with self._lock:
            self._wake = appeared
        while not self._stop.is_set():
            # One pending exists-watch at a time; rechecks on timeout go without one.
            watch = None if armed else (lambda _event: appeared.set())
            try:
                exists = self.store.exists(self.leader_path, watch=watch)
                armed = True
            except StoreError as e:
                armed = False
                failures += 1
                if failures > self.max_build_retries:
                    raise
                logger.warning("Cannot check leader node (attempt %d): %s", failures, e)
                self._backoff(failures - 1)
                continue
            if exists:
                db.log_event("INFO", "Leader node appeared, start serving", scope=self.scope)
                return True
            if appeared.wait(self.leader_recheck_s):
                appeared.clear()
                armed = False
        return False

    def _build_mirror(self) -> TreeMirror:
        attempt = 0
        while True:
            try:
                return self.watcher.build()
            except TreeBuildError as e:
                if attempt >= self.max_build_retries:
                    raise
                with self._lock:
                    self.last_error = str(e)
                logger.warning("Tree build failed (attempt %d/%d): %s", attempt + 1, self.max_build_retries, e)
                self._backoff(attempt)
                if self._stop.is_set():
                    raise LoopStopped(f"stopped while retrying the tree build: {e}") from e
                attempt += 1

    def reconcile_once(self) -> bool:
        """Run one cycle: mirror, snapshot, render, apply if changed.

        Returns True when a new config was written and handed to HAProxy.
        Decode and structural errors propagate; the loop does not guess.
        """
        self._set_state(LoopState.RECONCILING)
        mirror = self._build_mirror()
        with self._lock:
            self._mirror = mirror
            self.cycles += 1
        if logger.isEnabledFor(logging.DEBUG):
            for line in mirror.root.dump():
                logger.debug(line)

        snapshot = build_snapshot(mirror.root)
        config = render(snapshot, self.render_options)
        with self._lock:
            self.snapshot = snapshot
        if config == self.current_config:
            logger.debug("Config unchanged after cycle %d", self.cycles)
            with self._lock:
                self.pending_config = None
            return False
        return self._apply(config)

    def _apply(self, config: str) -> bool:
        logger.info("---==== New HA-Proxy config ====---\n%s\n---=============================---", config)
        try:
            write_config(self.config_path, config)
        except OSError as e:
            self._apply_failed(config, f"Cannot write {self.config_path}: {e}")
            return False

        self.supervisor.ensure_started(self.config_path)
        if not self.supervisor.reload(self.config_path):
            self._apply_failed(config, "reload failed, previous config stays in effect")
            return False

        with self._lock:
            self.current_config = config
            self.pending_config = None
            self.applies += 1
            self.last_applied_at = db.utc_now()
            self.last_error = None
            snapshot = self.snapshot
        db.record_apply(config, self.supervisor.pid, True, scope=self.scope)
        primary = snapshot.primary.id if snapshot and snapshot.primary else "none"
        replicas = len(snapshot.replicas) if snapshot else 0
        db.log_event("INFO", f"Config applied: primary {primary}, {replicas} replica(s)", scope=self.scope)
        return True

    def _apply_failed(self, config: str, msg: str) -> None:
        with self._lock:
            self.pending_config = config
            self.last_error = msg
        db.record_apply(config, self.supervisor.pid, False, scope=self.scope, detail=msg)
        db.log_event("ERROR", msg, scope=self.scope)

    def wait_for_change(self, timeout: float | None = None) -> bool:
        """Block until something in the mirrored subtree changes."""
        self._set_state(LoopState.IDLE)
        with self._lock:
            mirror = self._mirror
        if mirror is None:
            return True
        return mirror.wait(timeout)

    def _idle_tick(self) -> None:
        self.supervisor.ensure_alive(self.config_path)
        with self._lock:
            pending = self.pending_config
        if pending is not None:
            logger.info("Retrying apply of pending config")
            self._apply(pending)

    def run(self) -> None:
        try:
            if not self.wait_for_leader():
                return
            while not self._stop.is_set():
                self.reconcile_once()
                while not self._stop.is_set():
                    if self.wait_for_change(self.liveness_interval_s):
                        break
                    self._idle_tick()
        except LoopStopped as e:
            logger.info("Reconciler %s", e)
        except PlbError as e:
            with self._lock:
                self.last_error = str(e)
            db.log_event("CRITICAL", f"{type(e).__name__}: {e}", scope=self.scope)
            raise
        finally:
            self._set_state(LoopState.STOPPED)

    def status(self) -> dict[str, Any]:
        with self._lock:
            snapshot = self.snapshot
            return {
                "scope": self.scope,
                "state": self.state.value,
                "cycles": self.cycles,
                "applies": self.applies,
                "leader": snapshot.leader if snapshot else None,
                "primary": snapshot.primary if snapshot else None,
                "replicas": list(snapshot.replicas) if snapshot else [],
                "pid": self.supervisor.pid,
                "restarts": self.supervisor.restarts,
                "last_applied_at": self.last_applied_at,
                "pending_apply": self.pending_config is not None,
                "last_error": self.last_error,
                "active_watches": self.watcher.arena.active_count(),
            }
