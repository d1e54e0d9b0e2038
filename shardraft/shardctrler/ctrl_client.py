"""The clerk that talks to the replicated shard controller."""

from __future__ import annotations

import secrets
import time
from typing import Any, Mapping, Protocol, Sequence

from shardraft.shardctrler.ctrl_common import (
    SLEEP_TIME,
    Config,
    Err,
    JoinArgs,
    LeaveArgs,
    MoveArgs,
    QueryArgs,
)

_RETRY_ERRORS = (Err.ERR_WRONG_LEADER, Err.ERR_TIMEOUT)


class Endpoint(Protocol):
    def call(self, method: str, args: Any) -> Any:
        """Deliver a call; return the reply, or None when it was lost."""


def nrand() -> int:
    """A random non-negative identifier below 2**62."""
    return secrets.randbelow(1 << 62)


class Clerk:
    """Sends controller requests, retrying until the leader accepts them."""

    def __init__(self, servers: Sequence[Endpoint]) -> None:
        if not servers:
            raise ValueError("a clerk needs at least one server")
        self._servers = list(servers)
        self.leader_id = 0
        self.client_id = nrand()
        self.serial_num = 0

    def _call(self, method: str, args: Any) -> Any:
        while True:
            reply = self._servers[self.leader_id].call(method, args)
            if reply is not None and reply.err not in _RETRY_ERRORS:
                break
            self.leader_id = (self.leader_id + 1) % len(self._servers)
            time.sleep(SLEEP_TIME)
        self.serial_num += 1
        return reply

    def query(self, num: int) -> Config:
        """Fetch configuration ``num``, or the latest one for -1."""
        args = QueryArgs(num, self.client_id, self.serial_num)
        return self._call("ShardCtrler.Query", args).config

    def join(self, servers: Mapping[int, Sequence[str]]) -> None:
        args = JoinArgs(
            {gid: list(names) for gid, names in servers.items()},
            self.client_id,
            self.serial_num,
        )
        self._call("ShardCtrler.Join", args)

    def leave(self, gids: Sequence[int]) -> None:
        args = LeaveArgs(list(gids), self.client_id, self.serial_num)
        self._call("ShardCtrler.Leave", args)

    def move(self, shard: int, gid: int) -> None:
        args = MoveArgs(shard, gid, self.client_id, self.serial_num)
        self._call("ShardCtrler.Move", args)