"""Request and response messages of the server management API."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Route:
    """How a user's traffic is routed: a mode, a node and a re-route interval."""

    mode: int = 0
    node_id: str = ""
    intervals: int = 0


@dataclass
class TrafficLimit:
    """Validity window (Unix timestamps) and total traffic allowance of a user."""

    start_time: int = 0
    end_time: int = 0
    total_traffic: int = 0


@dataclass
class NodeInfo:
    id: str = ""
    ip: str = ""
    bind_user: str = ""
    online: bool = False


@dataclass
class UserInfo:
    user_name: str = ""
    traffic_limit: TrafficLimit | None = None
    route: Route | None = None
    current_traffic: int = 0
    off: bool = False


@dataclass
class CreateUserReq:
    user_name: str = ""
    password: str = ""
    pop_id: str = ""
    route: Route | None = None
    traffic_limit: TrafficLimit | None = None


@dataclass
class CreateUserResp:
    user_name: str = ""
    traffic_limit: TrafficLimit | None = None
    route: Route | None = None
    node_ip: str = ""


@dataclass
class DeleteUserReq:
    user_name: str = ""


@dataclass
class GetUserReq:
    user_name: str = ""


@dataclass
class GetUserResp:
    user_name: str = ""
    traffic_limit: TrafficLimit | None = None
    route: Route | None = None
    node_ip: str = ""


@dataclass
class ListNodeReq:
    type: int = 0
    start: int = 0
    end: int = 0


@dataclass
class ListNodeResp:
    nodes: list[NodeInfo] = field(default_factory=list)
    total: int = 0


@dataclass
class ListUserReq:
    start: int = 0
    end: int = 0


@dataclass
class ListUserResp:
    users: list[UserInfo] = field(default_factory=list)
    total: int = 0


@dataclass
class ModifyUserPasswordReq:
    user_name: str = ""
    new_password: str = ""


@dataclass
class ModifyUserReq:
    user_name: str = ""
    traffic_limit: TrafficLimit | None = None
    route: Route | None = None


@dataclass
class StartOrStopUserReq:
    user_name: str = ""
    action: str = ""


@dataclass
class SwitchUserRouteNodeReq:
    user_name: str = ""
    node_id: str = ""


@dataclass
class UserOperationResp:
    """Outcome of an operation on a user; failures carry ``err_msg``."""

    success: bool = False
    err_msg: str = ""