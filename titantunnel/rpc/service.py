"""Configuration, shared context and request dispatch of the management API server."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import redis
import yaml
from redis.cluster import RedisCluster

from ..store import Store
from . import listing, users
from .types import (
    CreateUserReq,
    CreateUserResp,
    DeleteUserReq,
    GetUserReq,
    GetUserResp,
    ListNodeReq,
    ListNodeResp,
    ListUserReq,
    ListUserResp,
    ModifyUserPasswordReq,
    ModifyUserReq,
    StartOrStopUserReq,
    SwitchUserRouteNodeReq,
    UserOperationResp,
)

DEFAULT_REDIS_PORT = 6379

_EMPTY = str()
_CREDENTIAL_FIELD = "Pass"


def _lookup(data: Mapping[str, Any], key: str, default: Any) -> Any:
    """Fetch ``key`` from ``data`` ignoring the case of the keys."""
    wanted = key.lower()
    for name, value in data.items():
        if str(name).lower() == wanted:
            return value
    return default


@dataclass
class RedisConfig:
    """Where the Redis server is: ``host`` is ``address:port``, ``type`` is node or cluster."""

    host: str = ""
    type: str = "node"
    password: str = _EMPTY
    tls: bool = False

    @classmethod
    def _from_mapping(cls, data: Mapping[str, Any]) -> RedisConfig:
        password = str(_lookup(data, _CREDENTIAL_FIELD, _EMPTY))
        return cls(
            host=str(_lookup(data, "Host", "")),
            type=str(_lookup(data, "Type", "node")),
            password=password,
            tls=bool(_lookup(data, "Tls", False)),
        )


@dataclass
class ServiceConfig:
    """Settings of the management API server."""

    name: str = ""
    listen_on: str = ""
    mode: str = "pro"
    redis: RedisConfig = field(default_factory=RedisConfig)
    pop_id: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ServiceConfig:
        """Build the configuration from a mapping with keys such as ``ListenOn`` and ``PopID``."""
        redis_data = _lookup(data, "Redis", None) or {}
        if not isinstance(redis_data, Mapping):
            raise ValueError("Redis must be a mapping")
        return cls(
            name=str(_lookup(data, "Name", "")),
            listen_on=str(_lookup(data, "ListenOn", "")),
            mode=str(_lookup(data, "Mode", "pro")),
            redis=RedisConfig._from_mapping(redis_data),
            pop_id=str(_lookup(data, "PopID", "")),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ServiceConfig:
        """Load the configuration from a YAML file."""
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"config file {path} must hold a mapping")
        return cls.from_mapping(data)


def _connect(conf: RedisConfig) -> Any:
    if not conf.host:
        raise ValueError("redis host is required")
    host, sep, port_text = conf.host.rpartition(":")
    if not sep:
        host, port = conf.host, DEFAULT_REDIS_PORT
    else:
        port = int(port_text)
    password = conf.password or None
    if conf.type == "cluster":
        return RedisCluster(
            host=host, port=port, password=password, ssl=conf.tls, decode_responses=True
        )
    if conf.type == "node":
        return redis.Redis(
            host=host, port=port, password=password, ssl=conf.tls, decode_responses=True
        )
    raise ValueError(f"redis type '{conf.type}' is not supported")


@dataclass
class ServiceContext:
    """What every request handler shares: the configuration and the store."""

    config: ServiceConfig
    redis: Any
    store: Store

    @classmethod
    def from_config(cls, config: ServiceConfig) -> ServiceContext:
        client = _connect(config.redis)
        return cls(config=config, redis=client, store=Store(client))


class ServerAPIServer:
    """Dispatches management API requests to their operations."""

    def __init__(self, ctx: ServiceContext) -> None:
        self._ctx = ctx

    def list_node(self, req: ListNodeReq) -> ListNodeResp:
        return listing.list_nodes(self._ctx.store, req)

    def create_user(self, req: CreateUserReq) -> CreateUserResp:
        return users.create_user(self._ctx.store, self._ctx.config.pop_id, req)

    def list_user(self, req: ListUserReq) -> ListUserResp:
        return listing.list_users(self._ctx.store, req)

    def modify_user_password(self, req: ModifyUserPasswordReq) -> UserOperationResp:
        return users.modify_user_password(self._ctx.store, req)

    def modify_user(self, req: ModifyUserReq) -> UserOperationResp:
        return users.modify_user(self._ctx.store, req)

    def get_user(self, req: GetUserReq) -> GetUserResp:
        return users.get_user(self._ctx.store, req)

    def delete_user(self, req: DeleteUserReq) -> UserOperationResp:
        return users.delete_user(self._ctx.store, req)

    def switch_user_route_node(self, req: SwitchUserRouteNodeReq) -> UserOperationResp:
        return users.switch_user_route_node(self._ctx.store, req)

    def start_or_stop_user(self, req: StartOrStopUserReq) -> UserOperationResp:
        return users.start_or_stop_user(self._ctx.store, req)