"""The Raft log with its snapshot offset, and the encoding of persistent state."""

from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from shardraft.raft.messages import Entry

logger = logging.getLogger("shardraft.raft")


class RaftLog:
    """A log whose first entry stands for everything covered by the snapshot.

    Entries are addressed by their absolute index; the first entry's index
    is the offset of the retained part of the log.
    """

    def __init__(self, entries: Iterable[Entry] | None = None) -> None:
        self._entries: list[Entry] = [Entry()] if entries is None else list(entries)
        if not self._entries:
            raise ValueError("a log needs at least its first entry")

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(list(self._entries))

    def __repr__(self) -> str:
        return f"RaftLog({self._entries!r})"

    def head(self) -> Entry:
        return self._entries[0]

    def tail(self) -> Entry:
        return self._entries[-1]

    def _offset(self, index: int) -> int:
        first, last = self._entries[0].index, self._entries[-1].index
        if not first <= index <= last:
            raise IndexError(f"log index {index} outside [{first}, {last}]")
        return index - first

    def entry_at(self, index: int) -> Entry:
        return self._entries[self._offset(index)]

    def append(self, entry: Entry) -> None:
        self._entries.append(entry)

    def entries_from(self, index: int) -> list[Entry]:
        """Return the entries from ``index`` to the end; empty just past the tail."""
        first, last = self._entries[0].index, self._entries[-1].index
        if not first <= index <= last + 1:
            raise IndexError(f"log index {index} outside [{first}, {last + 1}]")
        return self._entries[index - first:]

    def replace_after(self, prev_index: int, entries: Iterable[Entry]) -> None:
        """Drop everything after ``prev_index`` and append ``entries``."""
        offset = self._offset(prev_index)
        self._entries[offset + 1:] = list(entries)

    def is_up_to_date(self, last_term: int, last_index: int) -> bool:
        """Whether a log ending at (last_term, last_index) is at least as recent."""
        tail = self._entries[-1]
        return last_term > tail.term or (last_term == tail.term and last_index >= tail.index)

    def compact(self, index: int) -> Entry:
        """Trim the log so the entry at ``index`` becomes its first; return it."""
        offset = self._offset(index)
        del self._entries[:offset]
        return self._entries[0]

    def discard(self, term: int, index: int) -> bool:
        """Drop entries covered by a snapshot ending at (term, index).

        Returns False, leaving the log unchanged, when the snapshot is older
        than the log's first entry.
        """
        head, tail = self._entries[0], self._entries[-1]
        if index >= tail.index:
            kept: list[Entry] = []
        elif index >= head.index:
            kept = self._entries[index - head.index + 1:]
        else:
            return False
        self._entries = [Entry(term=term, index=index), *kept]
        logger.debug("log discarded through index %d (term %d)", index, term)
        return True


@dataclass
class PersistentState:
    """The part of a Raft peer's state that must survive a crash."""

    current_term: int = 0
    voted_for: int = -1
    log: list[Entry] = field(default_factory=lambda: [Entry()])
    last_included_index: int = 0
    last_included_term: int = 0


class CorruptStateError(ValueError):
    """Raised when persisted Raft state cannot be decoded."""


def encode_state(state: PersistentState) -> bytes:
    entries = [(e.command, e.term, e.index) for e in state.log]
    return pickle.dumps(
        (
            state.current_term,
            state.voted_for,
            entries,
            state.last_included_index,
            state.last_included_term,
        )
    )


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def decode_state(data: bytes | None) -> PersistentState | None:
    """Decode persisted state; return None when there is none yet."""
    if not data:
        return None
    try:
        decoded = pickle.loads(data)
    except Exception as exc:
        raise CorruptStateError(f"cannot decode raft state: {exc}") from exc
    if not isinstance(decoded, tuple) or len(decoded) != 5:
        raise CorruptStateError("raft state has the wrong shape")
    term, voted_for, raw_entries, last_index, last_term = decoded
    if not all(_is_int(v) for v in (term, voted_for, last_index, last_term)):
        raise CorruptStateError("raft state holds a non-integer field")
    if not isinstance(raw_entries, list) or not raw_entries:
        raise CorruptStateError("raft state holds no log")
    log = []
    for raw in raw_entries:
        if not isinstance(raw, tuple) or len(raw) != 3 or not (_is_int(raw[1]) and _is_int(raw[2])):
            raise CorruptStateError("raft state holds a malformed log entry")
        log.append(Entry(command=raw[0], term=raw[1], index=raw[2]))
    return PersistentState(term, voted_for, log, last_index, last_term)