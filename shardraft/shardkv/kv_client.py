"""The client of the sharded key/value service.

The clerk asks the shard controller which group serves a key's shard and
then talks to that group, refreshing its configuration whenever it is told
it asked the wrong group.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from shardraft.shardctrler.ctrl_client import Clerk as CtrlClerk
from shardraft.shardctrler.ctrl_client import Endpoint
from shardraft.shardctrler.ctrl_common import N_SHARDS, Config, default_config

RETRY_INTERVAL = 0.100


class Err(str, enum.Enum):
    OK = "OK"
    ERR_NO_KEY = "ErrNoKey"
    ERR_WRONG_GROUP = "ErrWrongGroup"
    ERR_WRONG_LEADER = "ErrWrongLeader"


@dataclass
class PutAppendArgs:
    key: str = ""
    value: str = ""
    op: str = "Put"


@dataclass
class PutAppendReply:
    err: Err = Err.OK


@dataclass
class GetArgs:
    key: str = ""


@dataclass
class GetReply:
    err: Err = Err.OK
    value: str = ""


def key2shard(key: str) -> int:
    """The shard a key belongs to, chosen by its first byte."""
    encoded = key.encode()
    shard = encoded[0] if encoded else 0
    return shard % N_SHARDS


class Clerk:
    """Reads and writes keys, following the controller's shard assignment."""

    def __init__(self, ctrlers: Sequence[Endpoint],
                 make_end: Callable[[str], Endpoint]) -> None:
        self._sm = CtrlClerk(ctrlers)
        self._make_end = make_end
        self.config: Config = default_config()

    def _refresh(self) -> None:
        time.sleep(RETRY_INTERVAL)
        self.config = self._sm.query(-1)

    def get(self, key: str) -> str:
        """Return the key's value, or "" if it does not exist; retries forever."""
        args = GetArgs(key)
        while True:
            gid = self.config.shards[key2shard(key)]
            for name in self.config.groups.get(gid, []):
                reply = self._make_end(name).call("ShardKV.Get", args)
                if reply is None:
                    continue
                if reply.err in (Err.OK, Err.ERR_NO_KEY):
                    return reply.value
                if reply.err == Err.ERR_WRONG_GROUP:
                    break
            self._refresh()

    def put_append(self, key: str, value: str, op: str) -> None:
        """Put or append ``value`` at ``key``; ``op`` is "Put" or "Append"."""
        args = PutAppendArgs(key, value, op)
        while True:
            gid = self.config.shards[key2shard(key)]
            for name in self.config.groups.get(gid, []):
                reply = self._make_end(name).call("ShardKV.PutAppend", args)
                if reply is None:
                    continue
                if reply.err == Err.OK:
                    return
                if reply.err == Err.ERR_WRONG_GROUP:
                    break
            self._refresh()

    def put(self, key: str, value: str) -> None:
        self.put_append(key, value, "Put")

    def append(self, key: str, value: str) -> None:
        self.put_append(key, value, "Append")