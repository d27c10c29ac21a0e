"""User management operations of the server API."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from enum import IntEnum

from redis.exceptions import RedisError

from ..store import Store, User
from .types import (
    CreateUserReq,
    CreateUserResp,
    DeleteUserReq,
    GetUserReq,
    GetUserResp,
    ModifyUserPasswordReq,
    ModifyUserReq,
    Route,
    StartOrStopUserReq,
    SwitchUserRouteNodeReq,
    TrafficLimit,
    UserOperationResp,
)

log = logging.getLogger(__name__)

DEFAULT_TOTAL_TRAFFIC = 1000
TRAFFIC_UNIT = 1024 * 1024 * 1024

ACTION_START = "start"
ACTION_STOP = "stop"

_STORE_ERRORS = (RedisError, OSError, ValueError, LookupError)


class RouteMode(IntEnum):
    MANUAL = 1
    AUTO = 2
    TIMED = 3


def _now() -> int:
    return int(time.time())


def _md5_hex(text: str) -> str:
    return hashlib.md5(text.encode()).hexdigest()


def _one_month_later(moment: datetime) -> datetime:
    """Same day one month on; days past the month's end roll into the next."""
    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    return moment.replace(year=year, month=month, day=1) + timedelta(days=moment.day - 1)


def _default_traffic_limit() -> TrafficLimit:
    now = datetime.now()
    return TrafficLimit(
        start_time=int(now.timestamp()),
        end_time=int(_one_month_later(now).timestamp()),
        total_traffic=DEFAULT_TOTAL_TRAFFIC,
    )


def _allocate_node(store: Store) -> str:
    try:
        return store.get_online_and_unbind_node() or ""
    except _STORE_ERRORS as exc:
        log.error("get online and unbind node: %s", exc)
        return ""


def _failure(message: str) -> UserOperationResp:
    return UserOperationResp(err_msg=message)


def check_route(store: Store, route: Route | None) -> None:
    """Raise if the route is missing, has a rejected mode, or names an unusable node."""
    if route is None:
        raise ValueError("route is empty")
    # Only modes outside the known set pass this check.
    if route.mode in tuple(RouteMode):
        raise ValueError(f"invalid route mode {route.mode}")
    if route.node_id:
        node = store.get_node(route.node_id)
        if node is None:
            raise LookupError(f"node {route.node_id} not exist")
        if node.bind_user:
            raise ValueError(f"node {route.node_id} already used by user {node.bind_user}")


def check_traffic(limit: TrafficLimit) -> None:
    """Raise if the validity window or the traffic allowance is invalid."""
    if limit.end_time <= limit.start_time:
        raise ValueError(
            f"invalid traffic start time {limit.start_time} and end time {limit.end_time}"
        )
    if limit.end_time < _now():
        raise ValueError(f"traffic end time {limit.end_time} is out of date")
    if limit.total_traffic <= 0:
        raise ValueError(f"invalid total traffic {limit.total_traffic}")


def create_user(store: Store, pop_id: str, req: CreateUserReq) -> CreateUserResp:
    """Create a user, bind it to a node and return its settings.

    Traffic in the request is given in GiB and stored in bytes.
    """
    if req.pop_id != pop_id:
        raise PermissionError(f"pop id not match, inquire pop id {pop_id}")
    if store.get_user(req.user_name) is not None:
        raise ValueError(f"user {req.user_name} already exist")
    if req.route is not None:
        check_route(store, req.route)
    if req.traffic_limit is not None:
        check_traffic(req.traffic_limit)

    limit = req.traffic_limit if req.traffic_limit is not None else _default_traffic_limit()
    if req.route is not None:
        route = replace(req.route)
    else:
        route = Route(mode=int(RouteMode.MANUAL), node_id=_allocate_node(store), intervals=0)
    if not route.node_id:
        route.node_id = _allocate_node(store)
    if not route.node_id:
        raise RuntimeError("no enough node for user")

    user = User(
        user_name=req.user_name,
        password_md5=_md5_hex(req.password),
        start_time=limit.start_time,
        end_time=limit.end_time,
        total_traffic=limit.total_traffic * TRAFFIC_UNIT,
        route_mode=int(route.mode),
        route_node_id=route.node_id,
        update_route_intervals=int(route.intervals),
        update_route_time=0,
    )
    store.save_user(user)
    store.zadd_user(user.user_name)
    store.bind_node(route.node_id, req.user_name)

    node = store.get_node(route.node_id)
    return CreateUserResp(
        user_name=req.user_name,
        traffic_limit=limit,
        route=route,
        node_ip=node.ip if node is not None else "",
    )


def delete_user(store: Store, req: DeleteUserReq) -> UserOperationResp:
    """Delete a user and release its node."""
    try:
        user = store.get_user(req.user_name)
        if user is None:
            return _failure(f"user {req.user_name} not exist")
        store.delete_user(req.user_name)
    except _STORE_ERRORS as exc:
        return _failure(str(exc))

    if user.route_node_id:
        store.unbind_node(user.route_node_id)
    return UserOperationResp(success=True)


def get_user(store: Store, req: GetUserReq) -> GetUserResp:
    user = store.get_user(req.user_name)
    if user is None:
        raise LookupError(f"user {req.user_name} not exist")
    node = store.get_node(user.route_node_id)
    if node is None:
        raise LookupError(f"node {user.route_node_id} not exist")
    return GetUserResp(
        user_name=req.user_name,
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
        node_ip=node.ip,
    )


def modify_user(store: Store, req: ModifyUserReq) -> UserOperationResp:
    """Replace a user's traffic limit and route, moving its node binding if needed."""
    if req.traffic_limit is None:
        raise ValueError("traffic limit not allow")
    if req.route is None:
        raise ValueError("route not allow")
    check_route(store, req.route)
    check_traffic(req.traffic_limit)

    try:
        user = store.get_user(req.user_name)
        if user is None:
            return _failure(f"user {req.user_name} not exist")
        old_node_id = user.route_node_id
        user = replace(
            user,
            start_time=req.traffic_limit.start_time,
            end_time=req.traffic_limit.end_time,
            total_traffic=req.traffic_limit.total_traffic,
            route_mode=int(req.route.mode),
            route_node_id=req.route.node_id,
            update_route_intervals=int(req.route.intervals),
        )
        store.save_user(user)
    except _STORE_ERRORS as exc:
        return _failure(str(exc))

    if old_node_id != user.route_node_id:
        for action, args in (
            (store.unbind_node, (old_node_id,)),
            (store.bind_node, (user.route_node_id, user.user_name)),
        ):
            try:
                action(*args)
            except _STORE_ERRORS as exc:
                log.error("modify user %s: %s", user.user_name, exc)
    return UserOperationResp(success=True)


def modify_user_password(store: Store, req: ModifyUserPasswordReq) -> UserOperationResp:
    try:
        user = store.get_user(req.user_name)
        if user is None:
            return _failure(f"user {req.user_name} not exist")
        store.save_user(replace(user, password_md5=_md5_hex(req.new_password)))
    except _STORE_ERRORS as exc:
        return _failure(str(exc))
    return UserOperationResp(success=True)


def start_or_stop_user(store: Store, req: StartOrStopUserReq) -> UserOperationResp:
    """Switch a user on (``start``) or off (``stop``)."""
    if req.action not in (ACTION_START, ACTION_STOP):
        return _failure("action not start or stop")
    try:
        user = store.get_user(req.user_name)
        if user is None:
            return _failure(f"user {req.user_name} not exist")
        store.save_user(replace(user, off=req.action == ACTION_STOP))
    except _STORE_ERRORS as exc:
        return _failure(str(exc))
    return UserOperationResp(success=True)


def _check_switch_node(store: Store, node_id: str) -> None:
    node = store.get_node(node_id)
    if node is None:
        raise LookupError(f"node {node_id} not exist")
    if node.bind_user:
        raise ValueError(f"node {node_id} already used by user {node.bind_user}")
    if not node.online:
        raise ValueError(f"node {node_id} offline")


def switch_user_route_node(store: Store, req: SwitchUserRouteNodeReq) -> UserOperationResp:
    """Move a user to the given node, or to any free online node if none is given."""
    try:
        if req.node_id:
            _check_switch_node(store, req.node_id)
            node_id = req.node_id
        else:
            node_id = store.get_online_and_unbind_node() or ""

        user = store.get_user(req.user_name)
        if user is None:
            return _failure(f"user {req.user_name} not exist")
        old_node_id = user.route_node_id
        user = replace(user, route_node_id=node_id)
        store.save_user(user)
        store.bind_node(node_id, user.user_name)
    except _STORE_ERRORS as exc:
        return _failure(str(exc))

    if old_node_id:
        try:
            store.unbind_node(old_node_id)
        except _STORE_ERRORS as exc:
            log.error("unbind node %s failed: %s", old_node_id, exc)
    return UserOperationResp(success=True)