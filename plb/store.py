from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from kazoo.client import KazooClient, KazooState
from kazoo.exceptions import KazooException
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.retry import KazooRetry

from .errors import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchEvent:
    path: str
    kind: str  # CREATED|DELETED|CHANGED|CHILD|NONE


Watch = Callable[[WatchEvent], None]


class CoordinationStore:
    """Read side of a hierarchical store with single-fire watches.

    Every method takes an optional watch callback. A registered watch fires
    at most once, on the first change after registration, from whatever
    thread the client delivers events on.
    """

    def get(self, path: str, watch: Watch | None = None) -> bytes:
        raise NotImplementedError

    def get_children(self, path: str, watch: Watch | None = None) -> list[str]:
        raise NotImplementedError

    def exists(self, path: str, watch: Watch | None = None) -> bool:
        raise NotImplementedError

    def add_session_listener(self, fn: Callable[[], None]) -> None:
        """Call fn whenever the session is lost and every watch with it."""

    def close(self) -> None:
        pass


def _wrap(watch: Watch | None):
    if watch is None:
        return None

    def _forward(event) -> None:
        watch(WatchEvent(path=event.path, kind=str(event.type)))

    return _forward


class KazooStore(CoordinationStore):
    """CoordinationStore over a ZooKeeper ensemble."""

    def __init__(self, hosts: str, timeout_s: float = 30.0, max_tries: int = 5, client: KazooClient | None = None):
        # command_retry applies to reads, which all go through client.retry.
        self.client = client or KazooClient(
            hosts=hosts,
            timeout=timeout_s,
            connection_retry=KazooRetry(max_tries=max_tries, delay=0.5, backoff=2, max_delay=30),
            command_retry=KazooRetry(max_tries=max_tries, delay=0.5, backoff=2, max_delay=30),
        )
        self.timeout_s = timeout_s
        self._session_listeners: list[Callable[[], None]] = []
        self.client.add_listener(self._on_state)

    def start(self) -> None:
        try:
            self.client.start(timeout=self.timeout_s)
        except (KazooTimeoutError, KazooException) as e:
            raise StoreError(f"cannot connect to ZooKeeper at {self.client.hosts}: {e}") from e

    def _on_state(self, state) -> None:
        # Runs on the kazoo event thread; must not block.
        if state == KazooState.LOST:
            logger.warning("ZooKeeper session lost, all watches are gone")
            for fn in list(self._session_listeners):
                fn()
        elif state == KazooState.SUSPENDED:
            logger.warning("ZooKeeper connection suspended")
        else:
            logger.info("ZooKeeper connection state: %s", state)

    def add_session_listener(self, fn: Callable[[], None]) -> None:
        self._session_listeners.append(fn)

    def get(self, path: str, watch: Watch | None = None) -> bytes:
        try:
            data, _stat = self.client.retry(self.client.get, path, watch=_wrap(watch))
        except KazooException as e:
            raise StoreError(f"get {path}: {type(e).__name__}: {e}") from e
        return data or b""

    def get_children(self, path: str, watch: Watch | None = None) -> list[str]:
        try:
            return list(self.client.retry(self.client.get_children, path, watch=_wrap(watch)))
        except KazooException as e:
            raise StoreError(f"get_children {path}: {type(e).__name__}: {e}") from e

    def exists(self, path: str, watch: Watch | None = None) -> bool:
        try:
            return self.client.retry(self.client.exists, path, watch=_wrap(watch)) is not None
        except KazooException as e:
            raise StoreError(f"exists {path}: {type(e).__name__}: {e}") from e

    def close(self) -> None:
        try:
            self.client.stop()
        finally:
            self.client.close()
