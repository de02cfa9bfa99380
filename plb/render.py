from __future__ import annotations

from dataclasses import dataclass

from .records import Backend
from .settings import Settings
from .snapshot import ClusterSnapshot

CONFIG_TEMPLATE = """global
\tmaxconn {maxconn}

defaults
\tlog\tglobal
\tmode\ttcp
\tretries 2
\ttimeout client 30m
\ttimeout connect 4s
\ttimeout server 30m
\ttimeout check 5s

frontend ft_postgres_master
\tbind *:{master_port}
\tdefault_backend bk_postgres_master

backend bk_postgres_master
\toption pgsql-check user {check_user}
{master_servers}
frontend ft_postgres_slaves
\tbind *:{replica_port}
\tdefault_backend bk_postgres_slaves

backend bk_postgres_slaves
\toption pgsql-check user {check_user}
{replica_servers}
listen stats
\tbind 0.0.0.0:{stats_port}
\tbalance
\tmode http
\tstats enable
\ttimeout client 5000
\ttimeout connect 4000
\ttimeout server 30000
\tstats realm Haproxy\\ Statistics
\tstats uri /
"""


@dataclass(frozen=True)
class RenderOptions:
    master_port: int = 5432
    replica_port: int = 5433
    stats_port: int = 9090
    maxconn: int = 100
    check_user: str = "admin"

    @classmethod
    def from_settings(cls, s: Settings) -> "RenderOptions":
        return cls(
            master_port=s.master_port,
            replica_port=s.replica_port,
            stats_port=s.stats_port,
            maxconn=s.maxconn,
            check_user=s.check_user,
        )


def server_line(backend: Backend, maxconn: int = 100) -> str:
    return f"\tserver {backend.id} {backend.host} maxconn {maxconn} check"


def _server_block(backends: list[Backend], maxconn: int) -> str:
    # Each server line ends with a newline so an empty block renders as nothing.
    return "".join(server_line(b, maxconn) + "\n" for b in backends)


def render(snapshot: ClusterSnapshot, options: RenderOptions = RenderOptions()) -> str:
    """Render the HAProxy configuration for a snapshot.

    Output depends only on the snapshot's value: replicas are emitted in the
    snapshot's order, which the builder keeps sorted by backend id.
    """
    master = [snapshot.primary] if snapshot.primary is not None else []
    return CONFIG_TEMPLATE.format(
        maxconn=options.maxconn,
        master_port=options.master_port,
        replica_port=options.replica_port,
        stats_port=options.stats_port,
        check_user=options.check_user,
        master_servers=_server_block(master, options.maxconn),
        replica_servers=_server_block(list(snapshot.replicas), options.maxconn),
    )
