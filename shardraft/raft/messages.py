"""Messages exchanged between Raft peers and with the service above them."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class NodeState(enum.IntEnum):
    FOLLOWER = 0
    CANDIDATE = 1
    LEADER = 2


@dataclass(frozen=True)
class Entry:
    """One log entry: the command, the term it was created in and its index."""

    command: Any = None
    term: int = 0
    index: int = 0


@dataclass
class ApplyMsg:
    """Sent to the service for each committed entry or installed snapshot."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    command_term: int = 0

    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0


@dataclass
class RequestVoteArgs:
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[Entry] = field(default_factory=list)
    leader_commit_index: int = 0


@dataclass
class AppendEntriesReply:
    term: int = 0
    success: bool = False
    first_index: int = 0


@dataclass
class InstallSnapshotArgs:
    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    data: bytes = b""


@dataclass
class InstallSnapshotReply:
    term: int = 0