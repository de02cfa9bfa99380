from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import DecodeError


class MemberState(str, Enum):
    RUNNING = "running"
    OTHER = "other"


class MemberRole(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


# Patroni has reported the primary as "master" for most of its history.
PRIMARY_ROLES = {"master", "primary"}


class _MemberPayload(BaseModel):
    """Raw JSON document Patroni writes under members/<name>."""

    model_config = ConfigDict(extra="ignore")

    conn_url: str
    api_url: str
    state: str = ""
    role: str = ""


@dataclass(frozen=True)
class MemberRecord:
    connection_address: str
    health_check_address: str
    state: MemberState
    role: MemberRole


@dataclass(frozen=True)
class Backend:
    id: str
    host: str
    health_check_port: str
    is_running: bool
    is_primary: bool


def _host_port(url: str, field: str) -> tuple[str, int]:
    try:
        parts = urlsplit(url)
        host, port = parts.hostname, parts.port
    except ValueError as e:
        raise DecodeError(f"{field}: cannot parse {url!r}: {e}") from e
    if not host or port is None:
        raise DecodeError(f"{field}: {url!r} is not a host:port address")
    return host, port


def _address(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def decode(raw: bytes | str) -> MemberRecord:
    """Decode one member payload into a MemberRecord.

    Raises DecodeError when the payload is not a JSON object carrying
    conn_url/api_url, or when either URL lacks a host and numeric port.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"payload is not utf-8: {e}") from e
    try:
        payload = _MemberPayload.model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"invalid member payload: {e.errors(include_url=False)}") from e

    conn_host, conn_port = _host_port(payload.conn_url, "conn_url")
    api_host, api_port = _host_port(payload.api_url, "api_url")
    return MemberRecord(
        connection_address=_address(conn_host, conn_port),
        health_check_address=_address(api_host, api_port),
        state=MemberState.RUNNING if payload.state == "running" else MemberState.OTHER,
        role=MemberRole.PRIMARY if payload.role in PRIMARY_ROLES else MemberRole.REPLICA,
    )


def backend_id(connection_address: str) -> str:
    return "postgresql_" + connection_address.replace(":", "_")


def to_backend(record: MemberRecord) -> Backend:
    return Backend(
        id=backend_id(record.connection_address),
        host=record.connection_address,
        health_check_port=record.health_check_address.rsplit(":", 1)[1],
        is_running=record.state is MemberState.RUNNING,
        is_primary=record.role is MemberRole.PRIMARY,
    )
