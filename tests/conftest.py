import json
import threading
from collections import defaultdict

import pytest

from plb import db
from plb.errors import ApplyError, ProcessStartError, StoreError
from plb.settings import Settings
from plb.store import CoordinationStore, WatchEvent
from plb.supervisor import ProcessHandle, ProcessManager

SCOPE_PATH = "/service/batman"


def member(host: str, state: str = "running", role: str = "replica", port: int = 5433) -> bytes:
    return json.dumps(
        {
            "conn_url": f"postgres://{host}:{port}/postgres",
            "api_url": f"http://{host}:8009/patroni",
            "state": state,
            "role": role,
            "xlog_location": 50331968,
        }
    ).encode()


class MemoryStore(CoordinationStore):
    """In-memory hierarchical store with ZooKeeper-style single-fire watches."""

    def __init__(self):
        self.lock = threading.Lock()
        self.data: dict[str, bytes] = {"/": b""}
        self.data_watches = defaultdict(list)
        self.child_watches = defaultdict(list)
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str, bool]] = []
        self._listeners = []

    # reads

    def _check(self, path):
        if path in self.failing:
            raise StoreError(f"{path}: ConnectionLoss")

    def _children(self, path):
        prefix = path.rstrip("/") + "/"
        return sorted({p[len(prefix):].split("/")[0] for p in self.data if p.startswith(prefix) and p != prefix})

    def get(self, path, watch=None):
        with self.lock:
            self.calls.append(("get", path, watch is not None))
            self._check(path)
            if path not in self.data:
                raise StoreError(f"get {path}: NoNodeError")
            if watch is not None:
                self.data_watches[path].append(watch)
            return self.data[path]

    def get_children(self, path, watch=None):
        with self.lock:
            self.calls.append(("get_children", path, watch is not None))
            self._check(path)
            if path not in self.data:
                raise StoreError(f"get_children {path}: NoNodeError")
            if watch is not None:
                self.child_watches[path].append(watch)
            return self._children(path)

    def exists(self, path, watch=None):
        with self.lock:
            self.calls.append(("exists", path, watch is not None))
            self._check(path)
            if watch is not None:
                self.data_watches[path].append(watch)
            return path in self.data

    def add_session_listener(self, fn):
        self._listeners.append(fn)

    # writes

    def _fire(self, fired):
        for watch, path, kind in fired:
            watch(WatchEvent(path=path, kind=kind))

    @staticmethod
    def _parent(path):
        return path.rsplit("/", 1)[0] or "/"

    def create(self, path, value=b""):
        fired = []
        with self.lock:
            parts = path.strip("/").split("/")
            for i in range(1, len(parts) + 1):
                p = "/" + "/".join(parts[:i])
                if p in self.data:
                    continue
                self.data[p] = value if p == path else b""
                fired += [(w, p, "CREATED") for w in self.data_watches.pop(p, [])]
                parent = self._parent(p)
                fired += [(w, parent, "CHILD") for w in self.child_watches.pop(parent, [])]
        self._fire(fired)

    def set(self, path, value):
        with self.lock:
            if path not in self.data:
                raise KeyError(path)
            self.data[path] = value
            fired = [(w, path, "CHANGED") for w in self.data_watches.pop(path, [])]
        self._fire(fired)

    def delete(self, path):
        fired = []
        with self.lock:
            doomed = [p for p in self.data if p == path or p.startswith(path + "/")]
            for p in doomed:
                del self.data[p]
                fired += [(w, p, "DELETED") for w in self.data_watches.pop(p, [])]
                fired += [(w, p, "DELETED") for w in self.child_watches.pop(p, [])]
            parent = self._parent(path)
            fired += [(w, parent, "CHILD") for w in self.child_watches.pop(parent, [])]
        self._fire(fired)

    def lose_session(self):
        with self.lock:
            self.data_watches.clear()
            self.child_watches.clear()
        for fn in list(self._listeners):
            fn()

    def pending_watches(self) -> int:
        with self.lock:
            return sum(len(v) for v in self.data_watches.values()) + sum(len(v) for v in self.child_watches.values())

    def registrations(self) -> int:
        return sum(1 for c in self.calls if c[2])


class FakeProcessManager(ProcessManager):
    def __init__(self):
        self.calls = []
        self.alive: set[int] = set()
        self.next_pid = 100
        self.fail_start = False
        self.fail_reload = False
        self.valid = True

    def _spawn(self):
        self.next_pid += 1
        self.alive.add(self.next_pid)
        return self.next_pid

    def start(self, config_path):
        self.calls.append(("start", config_path))
        if self.fail_start:
            raise ProcessStartError("Cannot start haproxy: no such file")
        return ProcessHandle(pid=self._spawn())

    def reload(self, config_path, old):
        self.calls.append(("reload", config_path, old.pid))
        if self.fail_reload:
            raise ApplyError("Cannot reload haproxy: boom")
        pid = self._spawn()
        self.alive.discard(old.pid)
        return ProcessHandle(pid=pid)

    def is_running(self, handle):
        return handle.pid in self.alive

    def validate(self, config_path):
        self.calls.append(("validate", config_path))
        return self.valid, "Configuration file is valid" if self.valid else "parsing error"


@pytest.fixture(autouse=True)
def journal(tmp_path_factory, monkeypatch):
    """Point the event journal at a per-test sqlite file."""
    db_dir = tmp_path_factory.mktemp("journal")
    monkeypatch.setattr(db, "settings", Settings(db_path=str(db_dir / "plb.db")))
    db.init_db()
    return db


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cluster(store):
    store.create(f"{SCOPE_PATH}/leader", b"node1")
    store.create(f"{SCOPE_PATH}/members/node1", member("10.0.0.1", role="master"))
    store.create(f"{SCOPE_PATH}/members/node2", member("10.0.0.2"))
    return store


@pytest.fixture
def manager():
    return FakeProcessManager()
