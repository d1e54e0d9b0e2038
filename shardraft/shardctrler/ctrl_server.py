"""The fault-tolerant shard controller: a configuration state machine on Raft."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Sequence

from shardraft.raft.messages import ApplyMsg
from shardraft.raft.node import Peer, Raft, make_raft
from shardraft.raft.persister import Persister
from shardraft.shardctrler.ctrl_common import (
    N_SHARDS,
    TIMEOUT,
    Err,
    JoinArgs,
    JoinReply,
    LeaveArgs,
    LeaveReply,
    MoveArgs,
    MoveReply,
    Op,
    OpContext,
    OpReply,
    OpType,
    QueryArgs,
    QueryReply,
)
from shardraft.shardctrler.state_machine import MemoryConfig

logger = logging.getLogger("shardraft.shardctrler")

_POLL = 0.1


class ShardCtrler:
    """One replica of the shard controller. Create it with :func:`start_server`."""

    def __init__(self, servers: Sequence[Peer], me: int, persister: Persister) -> None:
        self._lock = threading.Lock()
        self._me = me
        self._dead = threading.Event()
        self._apply_queue: queue.Queue[ApplyMsg] = queue.Queue()
        self._state_machine = MemoryConfig()
        self._last_ops: dict[int, OpContext] = {}
        self._notify: dict[int, queue.Queue[OpReply]] = {}
        self._rf = make_raft(list(servers), me, persister, self._apply_queue)
        threading.Thread(target=self._applier, daemon=True).start()

    # -- RPC handlers -------------------------------------------------------

    def join(self, args: JoinArgs) -> JoinReply:
        op = Op(
            op_type=OpType.JOIN,
            servers={gid: list(names) for gid, names in args.servers.items()},
            client_id=args.client_id,
            serial_num=args.serial_num,
        )
        return JoinReply(err=self._execute(op).err)

    def leave(self, args: LeaveArgs) -> LeaveReply:
        op = Op(
            op_type=OpType.LEAVE,
            gids=list(args.gids),
            client_id=args.client_id,
            serial_num=args.serial_num,
        )
        return LeaveReply(err=self._execute(op).err)

    def move(self, args: MoveArgs) -> MoveReply:
        """Move one shard; raises IndexError for a shard that does not exist."""
        if not 0 <= args.shard < N_SHARDS:
            raise IndexError(f"shard {args.shard} outside [0, {N_SHARDS})")
        op = Op(
            op_type=OpType.MOVE,
            shard=args.shard,
            gid=args.gid,
            client_id=args.client_id,
            serial_num=args.serial_num,
        )
        return MoveReply(err=self._execute(op).err)

    def query(self, args: QueryArgs) -> QueryReply:
        op = Op(
            op_type=OpType.QUERY,
            num=args.num,
            client_id=args.client_id,
            serial_num=args.serial_num,
        )
        result = self._execute(op)
        return QueryReply(err=result.err, config=result.config)

    # -- lifecycle ----------------------------------------------------------

    def kill(self) -> None:
        self._rf.kill()
        self._dead.set()

    def killed(self) -> bool:
        return self._dead.is_set()

    def raft(self) -> Raft:
        """The Raft peer underneath this controller replica."""
        return self._rf

    # -- internals ----------------------------------------------------------

    def _is_duplicate(self, client_id: int, serial_num: int) -> bool:
        context = self._last_ops.get(client_id)
        return context is not None and serial_num <= context.serial_num

    def _execute(self, op: Op) -> OpReply:
        if op.op_type != OpType.QUERY:
            with self._lock:
                if self._is_duplicate(op.client_id, op.serial_num):
                    last = self._last_ops[op.client_id].last_op_reply
                    if last is not None:
                        return OpReply(config=last.config.copy(), err=last.err)
        index, _, is_leader = self._rf.start(op)
        if not is_leader:
            return OpReply(err=Err.ERR_WRONG_LEADER)
        with self._lock:
            channel = self._notify.setdefault(index, queue.Queue(maxsize=1))
        try:
            result = channel.get(timeout=TIMEOUT)
            return OpReply(config=result.config.copy(), err=result.err)
        except queue.Empty:
            return OpReply(err=Err.ERR_TIMEOUT)
        finally:
            with self._lock:
                self._notify.pop(index, None)

    def _apply(self, op: Op) -> OpReply:
        if op.op_type == OpType.JOIN:
            self._state_machine.join(op.servers)
            return OpReply()
        if op.op_type == OpType.LEAVE:
            self._state_machine.leave(op.gids)
            return OpReply()
        if op.op_type == OpType.MOVE:
            self._state_machine.move(op.shard, op.gid)
            return OpReply()
        if op.op_type == OpType.QUERY:
            return OpReply(config=self._state_machine.query(op.num))
        return OpReply(err=Err.ERR_UNKNOWN_OP)

    def _applier(self) -> None:
        while not self.killed():
            try:
                message = self._apply_queue.get(timeout=_POLL)
            except queue.Empty:
                continue
            if not message.command_valid:
                continue
            op: Op = message.command
            with self._lock:
                context = self._last_ops.get(op.client_id)
                if (op.op_type != OpType.QUERY and context is not None
                        and op.serial_num <= context.serial_num
                        and context.last_op_reply is not None):
                    reply = context.last_op_reply
                else:
                    reply = self._apply(op)
                    if op.op_type != OpType.QUERY:
                        self._last_ops[op.client_id] = OpContext(op.serial_num, reply)
                term, is_leader = self._rf.get_state()
                if is_leader and message.command_term == term:
                    channel = self._notify.setdefault(
                        message.command_index, queue.Queue(maxsize=1)
                    )
                    try:
                        channel.put_nowait(reply)
                    except queue.Full:
                        logger.debug("controller %d dropped a reply for index %d",
                                     self._me, message.command_index)


def start_server(servers: Sequence[Peer], me: int, persister: Persister) -> ShardCtrler:
    """Start controller replica ``me`` over the Raft peers in ``servers``."""
    return ShardCtrler(servers, me, persister)