"""A single Raft peer: leader election, log replication and snapshots."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from typing import Any, Callable

from shardraft.raft.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    Entry,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    NodeState,
    RequestVoteArgs,
    RequestVoteReply,
)
from shardraft.raft.persister import Persister
from shardraft.raft.raft_log import PersistentState, RaftLog, decode_state, encode_state

logger = logging.getLogger("shardraft.raft")

HEARTBEAT_INTERVAL = 0.150
_RETRY_DELAY = 0.050
_BACKOFF_DELAY = 0.100
_POLL = 0.1


def random_election_timeout() -> float:
    return (250 + random.randrange(200)) / 1000.0


class Peer:
    """An in-process endpoint that delivers calls to another peer's handlers.

    A call returns the handler's reply, or None when the endpoint is
    disconnected, has no target, or the target has been killed.
    """

    _HANDLERS = {
        "request_vote": "request_vote",
        "append_entries": "append_entries",
        "install_snapshot": "install_snapshot",
        "Raft.RequestVote": "request_vote",
        "Raft.AppendEntries": "append_entries",
        "Raft.InstallSnapshot": "install_snapshot",
    }

    def __init__(self, target: Any = None, connected: bool = True) -> None:
        self.target = target
        self.connected = connected

    def call(self, method: str, args: Any) -> Any:
        target = self.target
        if not self.connected or target is None:
            return None
        killed: Callable[[], bool] | None = getattr(target, "killed", None)
        if killed is not None and killed():
            return None
        try:
            name = self._HANDLERS[method]
        except KeyError:
            raise ValueError(f"unknown method {method!r}") from None
        return getattr(target, name)(args)


class IllegalTransitionError(RuntimeError):
    """Raised on a state change that Raft forbids."""


class Raft:
    """One Raft peer. Create it with :func:`make_raft`."""

    def __init__(self, peers: list[Peer], me: int, persister: Persister,
                 apply_queue: "queue.Queue[ApplyMsg]") -> None:
        self._lock = threading.Lock()
        self._apply_cond = threading.Condition(self._lock)
        self._timer_cond = threading.Condition(self._lock)
        self._dead = threading.Event()

        self._peers = peers
        self._persister = persister
        self._me = me
        self._apply_queue = apply_queue

        self._state = NodeState.FOLLOWER
        self._current_term = 0
        self._voted_for = -1
        self._log = RaftLog()
        self._commit_index = 0
        self._last_applied = 0
        self._next_index = [0] * len(peers)
        self._match_index = [0] * len(peers)
        self._last_included_index = 0
        self._last_included_term = 0
        self._apply_snapshot = False

        self._election_deadline: float | None = time.monotonic() + random_election_timeout()
        self._heartbeat_deadline: float | None = None

        self._read_persist(persister.read_raft_state())
        self._snapshot_data = persister.read_snapshot()

    # -- public API ---------------------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer believes it leads."""
        with self._lock:
            return self._current_term, self._state == NodeState.LEADER

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Trim the log through ``index``, which the service's snapshot covers."""
        with self._lock:
            self._snapshot_locked(index, snapshot)

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Begin agreement on ``command``; return (index, term, is_leader)."""
        with self._lock:
            term = self._current_term
            if self._state != NodeState.LEADER:
                return -1, term, False
            index = self._log.tail().index + 1
            self._log.append(Entry(command=command, term=term, index=index))
            self._persist()
            logger.debug("node %d term %d started command at %d", self._me, term, index)
            return index, term, True

    def kill(self) -> None:
        self._dead.set()
        with self._lock:
            self._apply_cond.notify_all()
            self._timer_cond.notify_all()

    def killed(self) -> bool:
        return self._dead.is_set()

    # -- RPC handlers -------------------------------------------------------

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        with self._lock:
            reply = RequestVoteReply(term=self._current_term, vote_granted=False)
            if args.term < self._current_term or (
                args.term == self._current_term
                and self._voted_for not in (-1, args.candidate_id)
            ):
                return reply
            if args.term > self._current_term:
                self._current_term, self._voted_for = args.term, -1
            if not self._log.is_up_to_date(args.last_log_term, args.last_log_index):
                return reply
            self._change_state(NodeState.FOLLOWER)
            self._voted_for = args.candidate_id
            reply.term, reply.vote_granted = self._current_term, True
            self._persist()
            return reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        with self._lock:
            head, tail = self._log.head(), self._log.tail()
            if args.term < self._current_term:
                return AppendEntriesReply(self._current_term, False, tail.index + 1)
            if args.term > self._current_term:
                self._current_term, self._voted_for = args.term, -1
                self._persist()
            self._change_state(NodeState.FOLLOWER)

            if args.prev_log_index > tail.index:
                return AppendEntriesReply(self._current_term, False, tail.index + 1)
            if args.prev_log_index < head.index:
                return AppendEntriesReply(self._current_term, False, -1)

            match_term = self._log.entry_at(args.prev_log_index).term
            if match_term != args.prev_log_term:
                for i in range(args.prev_log_index - 1, head.index - 1, -1):
                    if self._log.entry_at(i).term != match_term:
                        return AppendEntriesReply(self._current_term, False, i + 1)

            self._log.replace_after(args.prev_log_index, args.entries)
            tail = self._log.tail()
            reply = AppendEntriesReply(
                self._current_term, True, args.prev_log_index + len(args.entries)
            )
            if args.leader_commit_index > self._commit_index:
                self._commit_index = min(args.leader_commit_index, tail.index)
                self._apply_cond.notify()
            self._persist()
            return reply

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        with self._lock:
            reply = InstallSnapshotReply(term=self._current_term)
            if args.term < self._current_term:
                return reply
            if args.term > self._current_term:
                self._current_term, self._voted_for = args.term, -1
                self._change_state(NodeState.FOLLOWER)
            self._persist()
            self._discard_logs(args.last_included_term, args.last_included_index)
            self._snapshot_locked(args.last_included_index, args.data)
            self._apply_snapshot = True
            self._apply_cond.notify()
            return reply

    # -- internals (lock held unless noted) ---------------------------------

    def _persist(self) -> None:
        state = PersistentState(
            current_term=self._current_term,
            voted_for=self._voted_for,
            log=list(self._log),
            last_included_index=self._last_included_index,
            last_included_term=self._last_included_term,
        )
        self._persister.save(encode_state(state), self._snapshot_data)

    def _read_persist(self, data: bytes) -> None:
        state = decode_state(data)
        if state is None:
            return
        self._current_term, self._voted_for = state.current_term, state.voted_for
        self._log = RaftLog(state.log)
        self._last_included_index = state.last_included_index
        self._last_included_term = state.last_included_term
        self._last_applied = self._commit_index = state.last_included_index

    def _discard_logs(self, term: int, index: int) -> None:
        if self._log.discard(term, index):
            self._last_applied = index
            self._commit_index = index

    def _snapshot_locked(self, index: int, snapshot: bytes) -> None:
        if index <= self._last_included_index:
            return
        head = self._log.compact(index)
        self._last_included_index, self._last_included_term = head.index, head.term
        self._snapshot_data = bytes(snapshot)
        self._persist()

    def _reset_election_timer(self) -> None:
        self._election_deadline = time.monotonic() + random_election_timeout()
        self._timer_cond.notify_all()

    def _reset_heartbeat_timer(self) -> None:
        self._heartbeat_deadline = time.monotonic() + HEARTBEAT_INTERVAL
        self._timer_cond.notify_all()

    def _change_state(self, new_state: NodeState) -> None:
        if new_state == NodeState.LEADER:
            if self._state != NodeState.CANDIDATE:
                raise IllegalTransitionError(f"{self._state.name} -> LEADER")
            self._state = NodeState.LEADER
            self._election_deadline = None
            self._reset_heartbeat_timer()
            new_index = self._log.tail().index
            self._next_index = [new_index + 1] * len(self._peers)
            self._match_index = [0] * len(self._peers)
            logger.debug("node %d became leader in term %d", self._me, self._current_term)
            self._broadcast_heartbeat()
        elif new_state == NodeState.CANDIDATE:
            if self._state == NodeState.LEADER:
                raise IllegalTransitionError("LEADER -> CANDIDATE")
            self._state = NodeState.CANDIDATE
            self._reset_election_timer()
            self._heartbeat_deadline = None
            self._current_term += 1
            self._voted_for = self._me
            self._persist()
        else:
            self._state, self._voted_for = NodeState.FOLLOWER, -1
            self._heartbeat_deadline = None
            self._reset_election_timer()
            self._persist()

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    def _ticker(self) -> None:
        with self._lock:
            while not self.killed():
                now = time.monotonic()
                election, heartbeat = self._election_deadline, self._heartbeat_deadline
                if election is not None and now >= election:
                    self._change_state(NodeState.CANDIDATE)
                    self._start_election()
                    self._reset_election_timer()
                    self._heartbeat_deadline = None
                elif heartbeat is not None and now >= heartbeat:
                    self._heartbeat_deadline = None
                    if self._state == NodeState.LEADER:
                        self._broadcast_heartbeat()
                        self._reset_heartbeat_timer()
                else:
                    pending = [d - now for d in (election, heartbeat) if d is not None]
                    self._timer_cond.wait(min([_POLL, *pending]))

    def _start_election(self) -> None:
        self._persist()
        tail = self._log.tail()
        args = RequestVoteArgs(self._current_term, self._me, tail.index, tail.term)
        votes = [1]
        for server in range(len(self._peers)):
            if server != self._me:
                self._spawn(self._ask_vote, server, args, votes)

    def _ask_vote(self, server: int, args: RequestVoteArgs, votes: list[int]) -> None:
        reply = self._peers[server].call("request_vote", args)
        if reply is None:
            return
        with self._lock:
            if self._current_term != args.term or self._state != NodeState.CANDIDATE:
                return
            if reply.term > self._current_term:
                self._current_term, self._voted_for = reply.term, -1
                self._change_state(NodeState.FOLLOWER)
                self._persist()
            elif reply.vote_granted and reply.term == self._current_term:
                votes[0] += 1
                if votes[0] > len(self._peers) // 2:
                    self._current_term, self._voted_for = args.term, -1
                    self._change_state(NodeState.LEADER)

    def _broadcast_heartbeat(self) -> None:
        for server in range(len(self._peers)):
            if server != self._me:
                self._spawn(self._replicate, server)

    def _replicate(self, server: int) -> None:
        peer = self._peers[server]
        while not self.killed():
            with self._lock:
                if self._state != NodeState.LEADER:
                    return
                if 0 < self._last_included_index and self._next_index[server] <= self._last_included_index:
                    self._spawn(self._send_snapshot, server)
                    return
                next_index = self._next_index[server]
                try:
                    prev_term = self._log.entry_at(next_index - 1).term
                    entries = self._log.entries_from(next_index)
                except IndexError:
                    return
                args = AppendEntriesArgs(self._current_term, self._me, next_index - 1,
                                         prev_term, entries, self._commit_index)
            reply = peer.call("append_entries", args)
            while reply is None:
                if self.killed() or self._state != NodeState.LEADER:
                    return
                time.sleep(_RETRY_DELAY)
                reply = peer.call("append_entries", args)
            with self._lock:
                if self._state != NodeState.LEADER or self._current_term != args.term:
                    return
                if reply.term > self._current_term:
                    self._current_term = reply.term
                    self._change_state(NodeState.FOLLOWER)
                    self._persist()
                    return
                if reply.success:
                    if args.entries:
                        self._match_index[server] = args.prev_log_index + len(args.entries)
                        self._next_index[server] = self._match_index[server] + 1
                    self._update_commit_index()
                    return
                self._next_index[server] = min(reply.first_index, self._log.tail().index)
            time.sleep(_BACKOFF_DELAY)

    def _send_snapshot(self, server: int) -> None:
        with self._lock:
            if self._state != NodeState.LEADER:
                return
            args = InstallSnapshotArgs(self._current_term, self._me, self._last_included_index,
                                       self._last_included_term, self._snapshot_data)
        reply = self._peers[server].call("install_snapshot", args)
        if reply is None:
            return
        with self._lock:
            if self._state != NodeState.LEADER or args.term != self._current_term:
                return
            if reply.term > self._current_term:
                self._current_term, self._voted_for = reply.term, -1
                self._change_state(NodeState.FOLLOWER)
                self._persist()
            elif args.last_included_index > self._match_index[server]:
                self._match_index[server] = max(self._next_index[server], args.last_included_index)
                self._next_index[server] = self._match_index[server] + 1
                self._update_commit_index()

    def _update_commit_index(self) -> None:
        head, tail = self._log.head(), self._log.tail()
        index = tail.index
        while (index > self._commit_index and index > head.index
               and self._log.entry_at(index).term == self._current_term):
            count = 1 + sum(
                1 for i, match in enumerate(self._match_index) if i != self._me and match >= index
            )
            if count > len(self._peers) // 2:
                self._commit_index = index
                self._apply_cond.notify()
                break
            index -= 1

    def _applier(self) -> None:
        while not self.killed():
            with self._lock:
                while (self._last_applied >= self._commit_index and not self._apply_snapshot
                       and not self.killed()):
                    self._apply_cond.wait(_POLL)
                if self.killed():
                    return
                commit_index: int | None = None
                if self._apply_snapshot:
                    self._apply_snapshot = False
                    msgs = [ApplyMsg(snapshot_valid=True, snapshot=self._snapshot_data,
                                     snapshot_term=self._last_included_term,
                                     snapshot_index=self._last_included_index)]
                else:
                    msgs = []
                    for i in range(self._last_applied + 1, self._commit_index + 1):
                        entry = self._log.entry_at(i)
                        msgs.append(ApplyMsg(command_valid=True, command=entry.command,
                                             command_index=i, command_term=entry.term))
                    commit_index = self._commit_index
            for msg in msgs:
                self._apply_queue.put(msg)
            if commit_index is not None:
                with self._lock:
                    self._last_applied = max(self._last_applied, commit_index)


def make_raft(peers: list[Peer], me: int, persister: Persister,
              apply_queue: "queue.Queue[ApplyMsg]") -> Raft:
    """Create a Raft peer from its persisted state and start its threads."""
    rf = Raft(peers, me, persister, apply_queue)
    threading.Thread(target=rf._ticker, daemon=True).start()
    threading.Thread(target=rf._applier, daemon=True).start()
    return rf