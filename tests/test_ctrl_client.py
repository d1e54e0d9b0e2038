import pytest

from shardraft.shardctrler.ctrl_client import Clerk, nrand
from shardraft.shardctrler.ctrl_common import (
    N_SHARDS,
    Err,
    JoinReply,
    LeaveReply,
    MoveReply,
    QueryReply,
    default_config,
)
from shardraft.shardctrler.state_machine import MemoryConfig


class _FakeCtrler:
    """Answers clerk calls from a shared MemoryConfig, after a scripted prefix."""

    def __init__(self, mc, script=None):
        self.mc = mc
        self.script = list(script or [])
        self.calls = []

    def call(self, method, args):
        self.calls.append((method, args))
        if self.script:
            step = self.script.pop(0)
            if step == "drop":
                return None
            return {"ShardCtrler.Join": JoinReply, "ShardCtrler.Leave": LeaveReply,
                    "ShardCtrler.Move": MoveReply, "ShardCtrler.Query": QueryReply}[method](err=step)
        if method == "ShardCtrler.Join":
            self.mc.join(args.servers)
            return JoinReply()
        if method == "ShardCtrler.Leave":
            self.mc.leave(args.gids)
            return LeaveReply()
        if method == "ShardCtrler.Move":
            self.mc.move(args.shard, args.gid)
            return MoveReply()
        if method == "ShardCtrler.Query":
            return QueryReply(config=self.mc.query(args.num))
        raise ValueError(method)


def test_join_then_query_round_trip():
    server = _FakeCtrler(MemoryConfig())
    ck = Clerk([server])
    ck.join({1: ["x", "y", "z"]})
    config = ck.query(-1)
    assert config.num == 1
    assert config.groups == {1: ["x", "y", "z"]}
    assert config.shards == [1] * N_SHARDS


def test_query_zero_is_default_config():
    ck = Clerk([_FakeCtrler(MemoryConfig())])
    ck.join({1: ["x"]})
    assert ck.query(0) == default_config()


def test_leave_and_move():
    ck = Clerk([_FakeCtrler(MemoryConfig())])
    ck.join({1: ["x"]})
    ck.join({2: ["y"]})
    ck.move(3, 2)
    assert ck.query(-1).shards[3] == 2
    ck.leave([1])
    config = ck.query(-1)
    assert set(config.groups) == {2}
    assert set(config.shards) == {2}


def test_serial_numbers_increase_and_client_id_is_stable():
    server = _FakeCtrler(MemoryConfig())
    ck = Clerk([server])
    ck.join({1: ["x"]})
    ck.query(-1)
    ck.leave([1])
    assert [args.serial_num for _, args in server.calls] == [0, 1, 2]
    assert {args.client_id for _, args in server.calls} == {ck.client_id}
    assert ck.serial_num == len(server.calls)


def test_join_sends_copy_of_servers():
    server = _FakeCtrler(MemoryConfig())
    ck = Clerk([server])
    names = ["x", "y"]
    ck.join({5: names})
    names.append("z")
    assert server.calls[0][1].servers == {5: ["x", "y"]}


def test_rotates_past_lost_and_wrong_leader_replies():
    mc = MemoryConfig()
    lost = _FakeCtrler(mc, ["drop"])
    wrong = _FakeCtrler(mc, [Err.ERR_WRONG_LEADER])
    good = _FakeCtrler(mc)
    ck = Clerk([lost, wrong, good])
    ck.join({1: ["x"]})
    assert ck.leader_id == 2
    assert len(good.calls) == 1
    ck.query(-1)
    assert len(lost.calls) == 1
    assert len(wrong.calls) == 1
    assert len(good.calls) == 2
    assert ck.serial_num == 2


def test_timeout_reply_is_retried():
    mc = MemoryConfig()
    server = _FakeCtrler(mc, [Err.ERR_TIMEOUT, Err.ERR_TIMEOUT])
    ck = Clerk([server])
    ck.join({4: ["a"]})
    assert len(server.calls) == 3
    assert set(server.calls[2][1].servers) == {4}
    assert ck.query(-1).groups == {4: ["a"]}


def test_clerk_needs_servers():
    with pytest.raises(ValueError):
        Clerk([])


def test_nrand_range_and_variety():
    values = {nrand() for _ in range(50)}
    assert all(0 <= v < 1 << 62 for v in values)
    assert len(values) > 1