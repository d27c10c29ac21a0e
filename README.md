# titantunnel

Server-side building blocks for a tunnel relay service:

- a SOCKS5 server (CONNECT and UDP ASSOCIATE, optional username/password
  authentication) that hands every accepted stream or datagram to a
  handler you supply;
- a Redis-backed store for edge nodes and proxy users, recording which
  node is bound to which user and which nodes are online;
- user-management operations (create, modify, delete, start/stop, switch
  route node, list nodes and users) as plain functions and behind a
  `ServerAPIServer` facade;
- user authentication, per-user traffic counting and a small LRU user
  cache.

## Installation

Install the package with your usual tool. It needs Python 3.10 or newer and
depends on `redis` and `pyyaml`. The `test` extra adds `pytest` and
`pytest-asyncio`.

## The store

`titantunnel.store.Store` wraps a redis-py client (bytes or decoded
responses both work). Nodes and users are kept as Redis hashes
(`titan:node:<id>`, `titan:user:<name>`); sorted sets index all nodes, bound
nodes, unbound nodes and users. A node counts as online while its
`titan:node:online:<id>` key exists; `set_node_online` sets it for 60
seconds.

```python
import redis

from titantunnel.store import Store

store = Store(redis.Redis(host="localhost", port=6379, decode_responses=True))

print(store.node_count(), store.unbind_node_count(), store.bind_node_count())
for node in store.list_nodes(0, 19):
    print(node.id, node.ip, node.bind_user, node.online)

node_id = store.get_online_and_unbind_node()
if node_id:
    store.bind_node(node_id, "alice")
```

`get_node` and `get_user` return `None` when the record does not exist;
`bind_node` and `unbind_node` raise `LookupError` for an unknown node.
Listings take inclusive ranks, newest first.

`titantunnel.structmap` holds the conversion used for the hashes:
`struct_to_map` turns a dataclass whose fields carry a `redis` metadata tag
into a map of strings, and `map_to_struct` builds a dataclass back from one.

## Managing users

The functions in `titantunnel.rpc.users` (`create_user`, `delete_user`,
`get_user`, `modify_user`, `modify_user_password`, `start_or_stop_user`,
`switch_user_route_node`, `check_route`, `check_traffic`) and
`titantunnel.rpc.listing` (`list_nodes`, `list_users`) take a `Store` and a
request dataclass from `titantunnel.rpc.types`. Invalid requests raise;
operations that answer with a status return a `UserOperationResp` whose
`err_msg` explains a failure. `create_user` takes the traffic allowance in
GiB and stores it in bytes; without a traffic limit it grants 1000 GiB for
one month, and without a node it picks an online unbound one.

For a configured service, load a `ServiceConfig` from YAML (keys such as
`ListenOn`, `Mode`, `PopID` and a `Redis` mapping with `Host`, `Type`
— `node` or `cluster` —, `Pass` and `Tls`), build a `ServiceContext` and
wrap it in a `ServerAPIServer`:

```python
from titantunnel.rpc.service import ServerAPIServer, ServiceConfig, ServiceContext

config = ServiceConfig.from_file("etc/server.yaml")
api = ServerAPIServer(ServiceContext.from_config(config))
```

`ServerAPIServer` exposes `list_node`, `create_user`, `list_user`,
`modify_user_password`, `modify_user`, `get_user`, `delete_user`,
`switch_user_route_node` and `start_or_stop_user`.

## Authentication and traffic

```python
import time

from titantunnel.auth import UserCache, UserTraffic, authenticate_user, flush_traffic

password = "password"
authenticate_user(store, "alice", password, int(time.time()))

traffic = UserTraffic()
traffic.add("alice", 4096)
flush_traffic(store, traffic.snapshot_and_clear())

cache = UserCache(store, size=512)
user = cache.get("alice")
```

`authenticate_user` raises `PermissionError` when the user does not exist,
is switched off, gives the wrong password, is outside its validity window
or has used up its traffic allowance. `flush_traffic` adds the counted
bytes to each user's stored total and returns the names it updated.
`UserCache.get` raises `LookupError` for an unknown user.

## The SOCKS5 server

`titantunnel.socks5.server.Socks5Server` is built from a
`Socks5ServerOptions` holding the listen address, the UDP relay IP and port
range, whether authentication is required, and a handler following
`Socks5Handler`:

```python
import asyncio

from titantunnel.socks5.server import Socks5Server, Socks5ServerOptions


class DirectHandler:
    async def handle_tcp(self, reader, writer, target):
        up_reader, up_writer = await asyncio.open_connection(target.domain_name, target.port)

        async def pipe(src, dst):
            while data := await src.read(4096):
                dst.write(data)
                await dst.drain()
            dst.close()

        await asyncio.gather(pipe(reader, up_writer), pipe(up_reader, writer))

    def handle_udp(self, conn, info, data):
        return None  # drop datagrams

    def handle_user_auth(self, user_name, password):
        pass  # accept everyone


async def main():
    server = Socks5Server(Socks5ServerOptions(address="127.0.0.1:1080", handler=DirectHandler()))
    await server.start()
    print("listening on", server.address)
    await asyncio.Event().wait()


asyncio.run(main())
```

CONNECT and UDP destinations on loopback, private or multicast addresses
are refused; BIND is answered with "command not supported". Each user with
a live UDP association gets one `UDPServer` on the first free port of the
configured range, which is closed when the user's last association ends.
Replies to UDP clients go through `UDPServer.send_to`, typically with a
datagram built by `new_datagram`. The wire-format helpers
(`parse_datagram`, `new_datagram`, `build_reply`, `parse_address`,
`to_address`, `read_auth_methods`, `read_addr_spec`,
`read_request_header`) live in `titantunnel.socks5.protocol`; the per-user
counters are in `titantunnel.socks5.counters`.

## What the package does not do

- It carries no traffic itself: there is no link to the edge nodes, so a
  `Socks5Handler` that forwards streams and datagrams has to be supplied.
- `ServerAPIServer` is a plain Python object; the package does not put it
  on the network (no gRPC or HTTP endpoint).
- There is no command-line program and no background timer: traffic is
  written to Redis only when `flush_traffic` is called, and nodes stay
  online only while something calls `Store.set_node_online`.