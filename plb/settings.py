from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


REQUIRED_ENV = ("ZOOKEEPER_HOST", "ZOOKEEPER_PORT", "PATRONI_SCOPE")


@dataclass(frozen=True)
class Settings:
    # Coordination store
    zk_host: str | None = os.getenv("ZOOKEEPER_HOST")
    zk_port: str | None = os.getenv("ZOOKEEPER_PORT")
    scope: str | None = os.getenv("PATRONI_SCOPE")
    namespace: str = os.getenv("PLB_NAMESPACE", "/service")
    zk_timeout_s: float = _env_float("PLB_ZK_TIMEOUT_S", 30.0)

    # Reconciliation
    leader_recheck_s: float = _env_float("PLB_LEADER_RECHECK_S", 5.0)
    liveness_interval_s: float = _env_float("PLB_LIVENESS_INTERVAL_S", 10.0)
    max_build_retries: int = _env_int("PLB_MAX_BUILD_RETRIES", 5)
    backoff_base_s: float = _env_float("PLB_BACKOFF_BASE_S", 0.5)

    # HAProxy
    config_path: str = os.getenv("PLB_CONFIG_PATH", "haproxy.cfg")
    manager: str = os.getenv("PLB_MANAGER", "subprocess")  # subprocess|docker
    haproxy_binary: str = os.getenv("PLB_HAPROXY_BINARY", "haproxy")
    haproxy_image: str = os.getenv("PLB_HAPROXY_IMAGE", "haproxy:2.8")
    validate_config: bool = _env_bool("PLB_VALIDATE_CONFIG", False)

    # Rendered template knobs
    master_port: int = _env_int("PLB_MASTER_PORT", 5432)
    replica_port: int = _env_int("PLB_REPLICA_PORT", 5433)
    stats_port: int = _env_int("PLB_STATS_PORT", 9090)
    maxconn: int = _env_int("PLB_MAXCONN", 100)
    check_user: str = os.getenv("PLB_CHECK_USER", "admin")

    # Journal / API
    db_path: str = os.getenv("PLB_DB_PATH", "plb.db")
    api_enabled: bool = _env_bool("PLB_API_ENABLED", True)
    api_host: str = os.getenv("PLB_API_HOST", "0.0.0.0")
    api_port: int = _env_int("PLB_API_PORT", 8008)
    log_level: str = os.getenv("PLB_LOG_LEVEL", "INFO")

    @property
    def zk_hosts(self) -> str:
        return f"{self.zk_host}:{self.zk_port}"

    @property
    def scope_path(self) -> str:
        return f"{self.namespace.rstrip('/')}/{self.scope}"

    @property
    def leader_path(self) -> str:
        return f"{self.scope_path}/leader"

    def missing_required(self) -> list[str]:
        """Names of required environment variables that are unset or empty."""
        values = {
            "ZOOKEEPER_HOST": self.zk_host,
            "ZOOKEEPER_PORT": self.zk_port,
            "PATRONI_SCOPE": self.scope,
        }
        return [name for name in REQUIRED_ENV if not values[name]]


settings = Settings()
