import time

import pytest

from titantunnel.rpc.types import (
    CreateUserReq,
    DeleteUserReq,
    GetUserReq,
    ModifyUserPasswordReq,
    ModifyUserReq,
    Route,
    StartOrStopUserReq,
    SwitchUserRouteNodeReq,
    TrafficLimit,
)
from titantunnel.rpc.users import (
    DEFAULT_TOTAL_TRAFFIC,
    TRAFFIC_UNIT,
    RouteMode,
    check_route,
    check_traffic,
    create_user,
    delete_user,
    get_user,
    modify_user,
    modify_user_password,
    start_or_stop_user,
    switch_user_route_node,
)
from titantunnel.store import Node, Store

POP = "pop-1"
NODE_IP = "203.0.113.5"


class _FakePipeline:
    def __init__(self, client):
        self._client = client
        self._calls = []

    def __getattr__(self, name):
        method = getattr(self._client, name)

        def queue(*args, **kwargs):
            self._calls.append((method, args, kwargs))
            return self

        return queue

    def execute(self):
        results = [method(*args, **kwargs) for method, args, kwargs in self._calls]
        self._calls = []
        return results


class FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.zsets = {}
        self.strings = {}

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def delete(self, *keys):
        for key in keys:
            self.hashes.pop(key, None)
            self.zsets.pop(key, None)
            self.strings.pop(key, None)

    def exists(self, key):
        return int(key in self.hashes or key in self.zsets or key in self.strings)

    def set(self, key, value, ex=None):
        self.strings[key] = value

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    def zrem(self, key, *members):
        for member in members:
            self.zsets.get(key, {}).pop(member, None)

    def _ordered(self, key):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))
        return [member for member, _ in items]

    @staticmethod
    def _slice(items, start, end):
        n = len(items)
        start = start + n if start < 0 else start
        end = end + n if end < 0 else end
        start = max(start, 0)
        return items[start : end + 1] if end >= start else []

    def zrange(self, key, start, end):
        return self._slice(self._ordered(key), start, end)

    def zrevrange(self, key, start, end):
        return self._slice(self._ordered(key)[::-1], start, end)

    def zcard(self, key):
        return len(self.zsets.get(key, {}))


@pytest.fixture
def client():
    return FakeRedis()


@pytest.fixture
def store(client):
    return Store(client)


def add_node(store, client, node_id, online=True, bind_user=""):
    store.save_node(Node(id=node_id, ip=NODE_IP, bind_user=bind_user))
    client.zadd("titan:node:unbind", {node_id: 1})
    if online:
        store.set_node_online(node_id)


def make_user(store, client, name="alice", node_id="node-a"):
    add_node(store, client, node_id)
    password = "password"
    return create_user(store, POP, CreateUserReq(user_name=name, password=password, pop_id=POP))


def test_check_route_rejects_missing_route(store):
    with pytest.raises(ValueError, match="route is empty"):
        check_route(store, None)


@pytest.mark.parametrize("mode", list(RouteMode))
def test_check_route_rejects_known_modes(store, mode):
    with pytest.raises(ValueError, match="invalid route mode"):
        check_route(store, Route(mode=int(mode)))


def test_check_route_node_checks(store, client):
    with pytest.raises(LookupError, match="not exist"):
        check_route(store, Route(mode=0, node_id="ghost"))
    add_node(store, client, "node-b", bind_user="bob")
    with pytest.raises(ValueError, match="already used by user bob"):
        check_route(store, Route(mode=0, node_id="node-b"))
    add_node(store, client, "node-c")
    assert check_route(store, Route(mode=0, node_id="node-c")) is None


def test_check_traffic_errors():
    now = int(time.time())
    with pytest.raises(ValueError, match="invalid traffic start time"):
        check_traffic(TrafficLimit(start_time=now + 10, end_time=now + 10, total_traffic=1))
    with pytest.raises(ValueError, match="out of date"):
        check_traffic(TrafficLimit(start_time=1, end_time=2, total_traffic=1))
    with pytest.raises(ValueError, match="invalid total traffic"):
        check_traffic(TrafficLimit(start_time=now, end_time=now + 100, total_traffic=0))


def test_create_user_pop_mismatch(store):
    with pytest.raises(PermissionError, match="pop id not match"):
        create_user(store, POP, CreateUserReq(user_name="alice", pop_id="other"))


def test_create_user_defaults(store, client):
    resp = make_user(store, client)
    assert resp.route.node_id == "node-a"
    assert resp.route.mode == RouteMode.MANUAL
    assert resp.node_ip == NODE_IP
    assert resp.traffic_limit.total_traffic == DEFAULT_TOTAL_TRAFFIC
    assert resp.traffic_limit.end_time > resp.traffic_limit.start_time

    user = store.get_user("alice")
    assert user.total_traffic == DEFAULT_TOTAL_TRAFFIC * TRAFFIC_UNIT
    assert user.password_md5 == "5f4dcc3b5aa765d61d8327deb882cf99"
    assert user.route_node_id == "node-a"
    assert store.get_node("node-a").bind_user == "alice"
    assert store.bind_node_count() == 1
    assert store.unbind_node_count() == 0
    assert store.user_count() == 1


def test_create_user_with_traffic_limit(store, client):
    add_node(store, client, "node-a")
    now = int(time.time())
    limit = TrafficLimit(start_time=now - 10, end_time=now + 1000, total_traffic=5)
    resp = create_user(
        store, POP, CreateUserReq(user_name="alice", pop_id=POP, traffic_limit=limit)
    )
    assert resp.traffic_limit == limit
    assert store.get_user("alice").total_traffic == 5 * TRAFFIC_UNIT


def test_create_user_twice_fails(store, client):
    make_user(store, client)
    with pytest.raises(ValueError, match="already exist"):
        create_user(store, POP, CreateUserReq(user_name="alice", pop_id=POP))


def test_create_user_without_nodes(store, client):
    add_node(store, client, "node-off", online=False)
    with pytest.raises(RuntimeError, match="no enough node"):
        create_user(store, POP, CreateUserReq(user_name="alice", pop_id=POP))
    assert store.get_user("alice") is None


def test_delete_user(store, client):
    missing = delete_user(store, DeleteUserReq(user_name="nobody"))
    assert missing.success is False
    assert missing.err_msg == "user nobody not exist"

    make_user(store, client)
    resp = delete_user(store, DeleteUserReq(user_name="alice"))
    assert resp.success is True
    assert store.get_user("alice") is None
    assert store.get_node("node-a").bind_user == ""
    assert store.unbind_node_count() == 1


def test_get_user(store, client):
    created = make_user(store, client)
    resp = get_user(store, GetUserReq(user_name="alice"))
    assert resp.route == created.route
    assert resp.node_ip == NODE_IP
    assert resp.traffic_limit.total_traffic == DEFAULT_TOTAL_TRAFFIC * TRAFFIC_UNIT
    with pytest.raises(LookupError, match="not exist"):
        get_user(store, GetUserReq(user_name="nobody"))


def test_modify_user_requires_parts(store):
    with pytest.raises(ValueError, match="traffic limit"):
        modify_user(store, ModifyUserReq(user_name="alice", route=Route()))
    with pytest.raises(ValueError, match="route not allow"):
        modify_user(store, ModifyUserReq(user_name="alice", traffic_limit=TrafficLimit()))


def test_modify_user_moves_node(store, client):
    make_user(store, client)
    add_node(store, client, "node-b")
    now = int(time.time())
    limit = TrafficLimit(start_time=now, end_time=now + 500, total_traffic=7)
    resp = modify_user(
        store,
        ModifyUserReq(user_name="alice", traffic_limit=limit, route=Route(mode=0, node_id="node-b")),
    )
    assert resp.success is True
    user = store.get_user("alice")
    assert user.route_node_id == "node-b"
    assert user.total_traffic == 7
    assert store.get_node("node-b").bind_user == "alice"
    assert store.get_node("node-a").bind_user == ""


def test_modify_user_missing_user(store):
    now = int(time.time())
    limit = TrafficLimit(start_time=now, end_time=now + 500, total_traffic=7)
    resp = modify_user(store, ModifyUserReq(user_name="bob", traffic_limit=limit, route=Route()))
    assert resp.err_msg == "user bob not exist"


def test_modify_user_password_round_trip(store, client):
    make_user(store, client)
    original = store.get_user("alice").password_md5
    new_password = "secret"
    resp = modify_user_password(
        store, ModifyUserPasswordReq(user_name="alice", new_password=new_password)
    )
    assert resp.success is True
    assert store.get_user("alice").password_md5 != original
    new_password = "password"
    modify_user_password(store, ModifyUserPasswordReq(user_name="alice", new_password=new_password))
    assert store.get_user("alice").password_md5 == original


def test_start_or_stop_user(store, client):
    make_user(store, client)
    assert start_or_stop_user(store, StartOrStopUserReq("alice", "pause")).success is False
    assert start_or_stop_user(store, StartOrStopUserReq("alice", "stop")).success is True
    assert store.get_user("alice").off is True
    assert start_or_stop_user(store, StartOrStopUserReq("alice", "start")).success is True
    assert store.get_user("alice").off is False
    missing = start_or_stop_user(store, StartOrStopUserReq("nobody", "stop"))
    assert missing.err_msg == "user nobody not exist"


def test_switch_to_offline_or_bound_node_fails(store, client):
    make_user(store, client)
    add_node(store, client, "node-off", online=False)
    resp = switch_user_route_node(store, SwitchUserRouteNodeReq("alice", "node-off"))
    assert resp.success is False
    assert "offline" in resp.err_msg
    add_node(store, client, "node-bound", bind_user="bob")
    resp = switch_user_route_node(store, SwitchUserRouteNodeReq("alice", "node-bound"))
    assert "already used by user bob" in resp.err_msg
    assert store.get_user("alice").route_node_id == "node-a"


def test_switch_to_given_node(store, client):
    make_user(store, client)
    add_node(store, client, "node-b")
    resp = switch_user_route_node(store, SwitchUserRouteNodeReq("alice", "node-b"))
    assert resp.success is True
    assert store.get_user("alice").route_node_id == "node-b"
    assert store.get_node("node-b").bind_user == "alice"
    assert store.get_node("node-a").bind_user == ""


def test_switch_allocates_free_node(store, client):
    make_user(store, client)
    add_node(store, client, "node-c")
    resp = switch_user_route_node(store, SwitchUserRouteNodeReq("alice", ""))
    assert resp.success is True
    assert store.get_user("alice").route_node_id == "node-c"
    assert store.get_node("node-c").bind_user == "alice"