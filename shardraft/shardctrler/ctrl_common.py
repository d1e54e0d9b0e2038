"""Types shared by the shard controller, its clerk and its state machine.

A configuration assigns each of a fixed number of shards to a replica
group. Configuration 0 has no groups and every shard on group 0, the
invalid group.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

N_SHARDS = 10

TIMEOUT = 0.150
SLEEP_TIME = 0.050


class Err(str, enum.Enum):
    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_WRONG_LEADER = "ErrWrongLeader"
    ERR_TIMEOUT = "ErrTimeout"
    ERR_UNKNOWN_OP = "ErrUnknownOp"


class OpType(enum.IntEnum):
    JOIN = 0
    LEAVE = 1
    MOVE = 2
    QUERY = 3
    NOP = 4


@dataclass
class Config:
    """A numbered assignment of shards to groups, with each group's servers."""

    num: int = 0
    shards: list[int] = field(default_factory=lambda: [0] * N_SHARDS)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.shards = list(self.shards)
        if len(self.shards) != N_SHARDS:
            raise ValueError(f"a config has exactly {N_SHARDS} shards, got {len(self.shards)}")

    def copy(self) -> Config:
        """Return a deep copy that shares no lists or dicts with this one."""
        return Config(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(servers) for gid, servers in self.groups.items()},
        )


def default_config() -> Config:
    """Configuration 0: no groups, every shard on group 0."""
    return Config()


@dataclass
class JoinArgs:
    servers: dict[int, list[str]] = field(default_factory=dict)
    client_id: int = 0
    serial_num: int = 0


@dataclass
class JoinReply:
    err: Err = Err.OK


@dataclass
class LeaveArgs:
    gids: list[int] = field(default_factory=list)
    client_id: int = 0
    serial_num: int = 0


@dataclass
class LeaveReply:
    err: Err = Err.OK


@dataclass
class MoveArgs:
    shard: int = 0
    gid: int = 0
    client_id: int = 0
    serial_num: int = 0


@dataclass
class MoveReply:
    err: Err = Err.OK


@dataclass
class QueryArgs:
    num: int = -1
    client_id: int = 0
    serial_num: int = 0


@dataclass
class QueryReply:
    err: Err = Err.OK
    config: Config = field(default_factory=default_config)


@dataclass
class Op:
    """A controller operation as it travels through the Raft log."""

    op_type: OpType = OpType.NOP
    servers: dict[int, list[str]] = field(default_factory=dict)
    gids: list[int] = field(default_factory=list)
    shard: int = 0
    gid: int = 0
    num: int = 0
    client_id: int = 0
    serial_num: int = 0


@dataclass
class OpReply:
    config: Config = field(default_factory=default_config)
    err: Err = Err.OK


@dataclass
class OpContext:
    """The last operation applied for one client, for duplicate detection."""

    serial_num: int = 0
    last_op_reply: OpReply | None = None