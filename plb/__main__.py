from __future__ import annotations

import argparse
import logging
import sys
from threading import Thread

import uvicorn

from . import db
from .api import create_app
from .errors import PlbError
from .reconciler import ReconcileLoop
from .render import RenderOptions, render
from .settings import Settings, settings
from .snapshot import build_snapshot
from .store import KazooStore
from .supervisor import ProcessSupervisor, build_manager
from .tree import TreeWatcher

logger = logging.getLogger("plb")


def _serve_api(loop: ReconcileLoop, s: Settings) -> None:
    config = uvicorn.Config(create_app(loop), host=s.api_host, port=s.api_port, log_level=s.log_level.lower())
    server = uvicorn.Server(config)
    Thread(target=server.run, name="plb-api", daemon=True).start()
    logger.info("Status API listening on %s:%d", s.api_host, s.api_port)


def print_config(store: KazooStore, s: Settings) -> int:
    """Render the config for the current cluster state without touching HAProxy."""
    mirror = TreeWatcher(store, s.scope_path).build()
    print(render(build_snapshot(mirror.root), RenderOptions.from_settings(s)))
    return 0


def main(argv: list[str] | None = None, s: Settings = settings) -> int:
    p = argparse.ArgumentParser(prog="plb", description="Keep HAProxy in sync with a Patroni cluster in ZooKeeper")
    p.add_argument("--print-config", action="store_true", help="Render the current config to stdout and exit")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=s.log_level.upper(),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    missing = s.missing_required()
    if missing:
        for name in missing:
            logger.error("%s environment variable is not specified. Exit", name)
        return 1

    store = KazooStore(s.zk_hosts, timeout_s=s.zk_timeout_s, max_tries=s.max_build_retries)
    logger.info("Connecting to ZooKeeper at %s", s.zk_hosts)
    try:
        store.start()
    except PlbError as e:
        logger.critical("%s", e)
        return 1

    try:
        if args.print_config:
            return print_config(store, s)

        db.init_db()
        manager = build_manager(s.manager, binary=s.haproxy_binary, image=s.haproxy_image)
        supervisor = ProcessSupervisor(manager, validate_before_reload=s.validate_config, scope=s.scope)
        loop = ReconcileLoop.from_settings(store, supervisor, s)
        if s.api_enabled:
            _serve_api(loop, s)
        loop.run()
    except (PlbError, ValueError) as e:
        logger.critical("%s: %s", type(e).__name__, e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 0
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
