from __future__ import annotations

import logging
import posixpath
from collections import deque
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Iterator

from .errors import StoreError, TreeBuildError
from .store import CoordinationStore, WatchEvent

logger = logging.getLogger(__name__)


@dataclass
class TreeNode:
    path: str
    name: str
    value: bytes = b""
    children: dict[str, "TreeNode"] = field(default_factory=dict)

    def child_path(self, name: str) -> str:
        return f"{self.path}/{name}"

    def walk(self) -> Iterator["TreeNode"]:
        """Breadth-first iteration over this node and its descendants."""
        queue = deque([self])
        while queue:
            node = queue.popleft()
            yield node
            queue.extend(node.children[name] for name in sorted(node.children))

    def dump(self) -> list[str]:
        lines: list[str] = []
        stack: list[tuple[TreeNode, int]] = [(self, 0)]
        while stack:
            node, depth = stack.pop()
            lines.append(f"{'  ' * depth}-{node.name}: {node.value.decode('utf-8', 'replace')}")
            for name in sorted(node.children, reverse=True):
                stack.append((node.children[name], depth + 1))
        return lines


class ChangeSignal:
    """One-shot notification shared by every watch of one mirror build.

    Any number of watch callbacks may fire it; only the first firing is kept.
    A closed signal ignores firings.
    """

    def __init__(self, generation: int):
        self.generation = generation
        self._event = Event()
        self._lock = Lock()
        self.cause: WatchEvent | None = None
        self.closed = False

    def fire(self, cause: WatchEvent) -> bool:
        with self._lock:
            if self.closed or self._event.is_set():
                return False
            self.cause = cause
            self._event.set()
            return True

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def close(self) -> None:
        with self._lock:
            self.closed = True


class NodeWatch:
    """The value watch and the children watch of a single path."""

    def __init__(self, path: str, arena: "WatchArena"):
        self.path = path
        self._arena = arena
        self._lock = Lock()
        self.value_armed = False
        self.children_armed = False
        self.stopped = False

    def _fired(self, event: WatchEvent, attr: str) -> None:
        with self._lock:
            if self.stopped:
                return
            setattr(self, attr, False)
        self._arena.notify(event)

    def on_value(self, event: WatchEvent) -> None:
        self._fired(event, "value_armed")

    def on_children(self, event: WatchEvent) -> None:
        self._fired(event, "children_armed")

    def arm_value(self) -> bool:
        """Claim the value watch for registration; False if one is already armed."""
        with self._lock:
            if self.value_armed or self.stopped:
                return False
            self.value_armed = True
            return True

    def arm_children(self) -> bool:
        with self._lock:
            if self.children_armed or self.stopped:
                return False
            self.children_armed = True
            return True

    def disarm(self, attr: str) -> None:
        with self._lock:
            setattr(self, attr, False)

    def stop(self) -> None:
        with self._lock:
            self.stopped = True
            self.value_armed = False
            self.children_armed = False


class WatchArena:
    """Per-path watch handles that outlive a single mirror build.

    Only paths that are new, or whose watch already fired, get a fresh
    registration on the next build; paths that vanish are retired. Every
    firing is forwarded to the signal of the most recent build.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._watches: dict[str, NodeWatch] = {}
        self._signal: ChangeSignal | None = None
        self._open: list[ChangeSignal] = []
        self._generation = 0
        self.registrations = 0

    def begin_cycle(self) -> ChangeSignal:
        with self._lock:
            self._generation += 1
            signal = ChangeSignal(self._generation)
            self._signal = signal
            self._open.append(signal)
            return signal

    def finish_cycle(self, signal: ChangeSignal, seen: set[str]) -> int:
        """Retire watches of paths absent from the finished build and close
        every signal older than it. Returns the number of retired paths."""
        with self._lock:
            gone = [p for p in self._watches if p not in seen]
            for p in gone:
                self._watches.pop(p).stop()
            stale = [s for s in self._open if s is not signal]
            self._open = [signal]
        for s in stale:
            s.close()
        return len(gone)

    def watch_for(self, path: str) -> NodeWatch:
        with self._lock:
            nw = self._watches.get(path)
            if nw is None:
                nw = NodeWatch(path, self)
                self._watches[path] = nw
            return nw

    def count_registration(self) -> None:
        with self._lock:
            self.registrations += 1

    def notify(self, event: WatchEvent) -> None:
        with self._lock:
            signal = self._signal
        if signal is not None and signal.fire(event):
            logger.debug("Change observed at %s (%s)", event.path, event.kind)

    def invalidate(self) -> None:
        """Drop every handle, e.g. after the store session (and its watches) is lost."""
        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
        for nw in watches:
            nw.stop()
        self.notify(WatchEvent(path="", kind="SESSION_LOST"))

    def active_count(self) -> int:
        with self._lock:
            return len(self._watches)

    def armed_count(self) -> int:
        with self._lock:
            watches = list(self._watches.values())
        return sum(int(nw.value_armed) + int(nw.children_armed) for nw in watches)

    def open_signals(self) -> int:
        with self._lock:
            return len(self._open)


@dataclass
class TreeMirror:
    root: TreeNode
    signal: ChangeSignal
    retired: int = 0

    def wait(self, timeout: float | None = None) -> bool:
        return self.signal.wait(timeout)


class TreeWatcher:
    """Mirrors the subtree under root_path and reports any change in it."""

    def __init__(self, store: CoordinationStore, root_path: str, arena: WatchArena | None = None):
        self.store = store
        self.root_path = root_path.rstrip("/")
        self.arena = arena or WatchArena()
        store.add_session_listener(self.arena.invalidate)

    def build(self) -> TreeMirror:
        """Read the whole subtree, arming watches where none is armed.

        The returned mirror is complete before its signal can be waited on.
        Any failed read aborts the build with TreeBuildError.
        """
        signal = self.arena.begin_cycle()
        root = TreeNode(path=self.root_path, name=posixpath.basename(self.root_path))
        seen: set[str] = set()
        queue: deque[TreeNode] = deque([root])
        while queue:
            node = queue.popleft()
            seen.add(node.path)
            nw = self.arena.watch_for(node.path)
            node.value = self._read_value(node.path, nw)
            for name in sorted(self._list_children(node.path, nw)):
                child = TreeNode(path=node.child_path(name), name=name)
                node.children[name] = child
                queue.append(child)

        retired = self.arena.finish_cycle(signal, seen)
        if retired:
            logger.debug("Retired watches for %d vanished path(s)", retired)
        return TreeMirror(root=root, signal=signal, retired=retired)

    def _read_value(self, path: str, nw: NodeWatch) -> bytes:
        armed = nw.arm_value()
        try:
            value = self.store.get(path, watch=nw.on_value if armed else None)
        except StoreError as e:
            if armed:
                nw.disarm("value_armed")
            raise TreeBuildError(path, f"cannot read value: {e}") from e
        if armed:
            self.arena.count_registration()
        return value

    def _list_children(self, path: str, nw: NodeWatch) -> list[str]:
        armed = nw.arm_children()
        try:
            names = self.store.get_children(path, watch=nw.on_children if armed else None)
        except StoreError as e:
            if armed:
                nw.disarm("children_armed")
            raise TreeBuildError(path, f"cannot list children: {e}") from e
        if armed:
            self.arena.count_registration()
        return names
