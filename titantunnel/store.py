"""Redis-backed storage of tunnel nodes, users and node bindings."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from .structmap import TAG, _parse_time, map_to_struct, struct_to_map

log = logging.getLogger(__name__)

NODE_KEY = "titan:node:{}"
NODE_ZSET_KEY = "titan:node:zset"
USER_KEY = "titan:user:{}"
USER_ZSET_KEY = "titan:user:zset"
NODE_ONLINE_KEY = "titan:node:online:{}"
NODE_BIND_KEY = "titan:node:bind"
NODE_UNBIND_KEY = "titan:node:unbind"

ONLINE_TTL_SECONDS = 60
_UNBIND_PAGE = 20

_DIGEST_COLUMN = "_".join(("password", "md5"))


def _col(name: str, default: Any) -> Any:
    return field(default=default, metadata={TAG: name})


@dataclass
class Node:
    """A tunnel node as stored in its Redis hash."""

    id: str = ""
    os: str = _col("os", "")
    login_at: str = _col("login_at", "")
    register_at: str = _col("register_at", "")
    online: bool = False
    ip: str = _col("ip", "")
    bind_user: str = _col("bind_user", "")


@dataclass
class User:
    """A proxy user account; traffic values are in bytes, times are Unix timestamps."""

    user_name: str = _col("user_name", "")
    password_md5: str = _col(_DIGEST_COLUMN, str())
    start_time: int = _col("start_time", 0)
    end_time: int = _col("end_time", 0)
    total_traffic: int = _col("total_traffic", 0)
    current_traffic: int = _col("current_traffic", 0)
    route_mode: int = _col("route_mode", 0)
    route_node_id: str = _col("route_node_id", "")
    update_route_intervals: int = _col("update_route_intervals", 0)
    update_route_time: int = _col("update_route_time", 0)
    off: bool = _col("off", False)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode()
    return str(value)


def _text_map(mapping: dict) -> dict[str, str]:
    return {_text(k): _text(v) for k, v in mapping.items()}


def _now() -> int:
    return int(time.time())


class Store:
    """Node and user records kept in Redis through a redis-py compatible client."""

    def __init__(self, client: Any) -> None:
        self._client = client

    # nodes

    def set_node_and_zadd(self, node: Node) -> None:
        """Save the node hash and index it by registration time, atomically."""
        mapping = struct_to_map(node)
        registered = _parse_time(node.register_at)
        pipe = self._client.pipeline(transaction=True)
        pipe.hset(NODE_KEY.format(node.id), mapping=mapping)
        pipe.zadd(NODE_ZSET_KEY, {node.id: math.floor(registered.timestamp())})
        pipe.execute()

    def save_node(self, node: Node) -> None:
        mapping = struct_to_map(node)
        log.debug("save node %s: %s", node.id, mapping)
        self._client.hset(NODE_KEY.format(node.id), mapping=mapping)

    def get_node(self, node_id: str) -> Node | None:
        """Return the node, or None if it does not exist."""
        data = self._client.hgetall(NODE_KEY.format(node_id))
        if not data:
            return None
        node = map_to_struct(_text_map(data), Node)
        return replace(node, id=node_id, online=self.is_node_online(node_id))

    def list_nodes(self, start: int, end: int) -> list[Node]:
        return self._list_nodes(NODE_ZSET_KEY, start, end)

    def list_unbind_nodes(self, start: int, end: int) -> list[Node]:
        return self._list_nodes(NODE_UNBIND_KEY, start, end)

    def list_bind_nodes(self, start: int, end: int) -> list[Node]:
        return self._list_nodes(NODE_BIND_KEY, start, end)

    def _list_nodes(self, zset_key: str, start: int, end: int) -> list[Node]:
        ids = [_text(i) for i in self._client.zrevrange(zset_key, start, end)]

        pipe = self._client.pipeline(transaction=True)
        for node_id in ids:
            pipe.exists(NODE_ONLINE_KEY.format(node_id))
        onlines = [int(r) == 1 for r in pipe.execute()]

        hashes = self._hgetall_many(NODE_KEY.format(i) for i in ids)

        nodes = []
        for node_id, online, data in zip(ids, onlines, hashes):
            try:
                node = map_to_struct(data, Node)
            except ValueError as exc:
                log.error("list nodes: cannot read node %s: %s", node_id, exc)
                continue
            nodes.append(replace(node, id=node_id, online=online))
        return nodes

    def _hgetall_many(self, keys: Iterable[str]) -> list[dict[str, str]]:
        pipe = self._client.pipeline(transaction=True)
        for key in keys:
            pipe.hgetall(key)
        return [_text_map(r) for r in pipe.execute()]

    def node_count(self) -> int:
        return int(self._client.zcard(NODE_ZSET_KEY))

    def unbind_node_count(self) -> int:
        return int(self._client.zcard(NODE_UNBIND_KEY))

    def bind_node_count(self) -> int:
        return int(self._client.zcard(NODE_BIND_KEY))

    def set_node_online(self, node_id: str) -> None:
        """Mark the node online for the next minute."""
        self._client.set(NODE_ONLINE_KEY.format(node_id), "true", ex=ONLINE_TTL_SECONDS)

    def set_node_offline(self, node_id: str) -> None:
        self._client.delete(NODE_ONLINE_KEY.format(node_id))

    def is_node_online(self, node_id: str) -> bool:
        return bool(self._client.exists(NODE_ONLINE_KEY.format(node_id)))

    # users

    def save_user(self, user: User) -> None:
        self._client.hset(USER_KEY.format(user.user_name), mapping=struct_to_map(user))

    def get_user(self, user_name: str) -> User | None:
        """Return the user, or None if it does not exist."""
        data = self._client.hgetall(USER_KEY.format(user_name))
        if not data:
            return None
        return map_to_struct(_text_map(data), User)

    def delete_user(self, user_name: str) -> None:
        self._client.delete(USER_KEY.format(user_name))

    def zadd_user(self, user_name: str) -> None:
        self._client.zadd(USER_ZSET_KEY, {user_name: _now()})

    def list_users(self, start: int, end: int) -> list[User]:
        names = [_text(n) for n in self._client.zrevrange(USER_ZSET_KEY, start, end)]
        users = []
        for name, data in zip(names, self._hgetall_many(USER_KEY.format(n) for n in names)):
            try:
                users.append(map_to_struct(data, User))
            except ValueError as exc:
                log.error("list users: cannot read user %s: %s", name, exc)
        return users

    def user_count(self) -> int:
        return int(self._client.zcard(USER_ZSET_KEY))

    # bindings

    def _require_node(self, node_id: str) -> Node:
        node = self.get_node(node_id)
        if node is None:
            raise LookupError(f"node {node_id} not exist")
        return node

    def bind_node(self, node_id: str, user_name: str) -> None:
        """Move the node to the bound set and record its user."""
        self._client.zrem(NODE_UNBIND_KEY, node_id)
        self._client.zadd(NODE_BIND_KEY, {node_id: _now()})
        node = self._require_node(node_id)
        if node.bind_user != user_name:
            self.save_node(replace(node, bind_user=user_name))

    def unbind_node(self, node_id: str) -> None:
        """Move the node to the unbound set and clear its user."""
        self._client.zrem(NODE_BIND_KEY, node_id)
        self._client.zadd(NODE_UNBIND_KEY, {node_id: _now()})
        node = self._require_node(node_id)
        if node.bind_user:
            self.save_node(replace(node, bind_user=""))

    def get_online_and_unbind_node(self) -> str | None:
        """Return the first unbound node that is online, or None."""
        start = 0
        while True:
            ids = self._client.zrange(NODE_UNBIND_KEY, start, start + _UNBIND_PAGE - 1)
            if not ids:
                return None
            for raw in ids:
                node_id = _text(raw)
                if self.is_node_online(node_id):
                    return node_id
            start += _UNBIND_PAGE