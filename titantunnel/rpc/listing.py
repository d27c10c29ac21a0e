"""Paged listing of nodes and users for the server API."""

from __future__ import annotations

from enum import IntEnum

from ..store import Store
from .types import (
    ListNodeReq,
    ListNodeResp,
    ListUserReq,
    ListUserResp,
    NodeInfo,
    Route,
    TrafficLimit,
    UserInfo,
)


class NodeListType(IntEnum):
    """Which set of nodes a listing request covers."""

    ALL = 1
    UNBIND = 2
    BIND = 3


def list_nodes(store: Store, req: ListNodeReq) -> ListNodeResp:
    """Return one page of nodes of the requested set and the size of that set.

    ``start`` and ``end`` are inclusive ranks, newest first; negative values
    count from the end as in Redis.
    """
    try:
        kind = NodeListType(req.type)
    except ValueError:
        raise ValueError(f"request type [{req.type}] not match") from None

    fetch, count = {
        NodeListType.ALL: (store.list_nodes, store.node_count),
        NodeListType.UNBIND: (store.list_unbind_nodes, store.unbind_node_count),
        NodeListType.BIND: (store.list_bind_nodes, store.bind_node_count),
    }[kind]

    nodes = [
        NodeInfo(id=node.id, ip=node.ip, bind_user=node.bind_user, online=node.online)
        for node in fetch(req.start, req.end)
    ]
    return ListNodeResp(nodes=nodes, total=count())


def list_users(store: Store, req: ListUserReq) -> ListUserResp:
    """Return one page of users, newest first, and the total number of users."""
    users = [
        UserInfo(
            user_name=user.user_name,
            traffic_limit=TrafficLimit(
                start_time=user.start_time,
                end_time=user.end_time,
                total_traffic=user.total_traffic,
            ),
            route=Route(
                mode=user.route_mode,
                node_id=user.route_node_id,
                intervals=user.update_route_intervals,
            ),
            current_traffic=user.current_traffic,
            off=user.off,
        )
        for user in store.list_users(req.start, req.end)
    ]
    return ListUserResp(users=users, total=store.user_count())