import queue
import threading
import time

import pytest

from shardraft.raft.messages import (
    AppendEntriesArgs,
    Entry,
    InstallSnapshotArgs,
    RequestVoteArgs,
)
from shardraft.raft.node import Peer, make_raft
from shardraft.raft.persister import Persister
from shardraft.raft.raft_log import decode_state


class Cluster:
    def __init__(self, n):
        self.n = n
        self.ends = [[Peer() for _ in range(n)] for _ in range(n)]
        self.rafts = [None] * n
        self.saved = [Persister() for _ in range(n)]
        self.logs = [dict() for _ in range(n)]
        self.connected = [True] * n
        self.lock = threading.Lock()
        for i in range(n):
            self.start1(i)

    def start1(self, i):
        if self.rafts[i] is not None:
            self.rafts[i].kill()
        self.saved[i] = self.saved[i].copy()
        self.ends[i] = [Peer(connected=self.connected[i] and self.connected[j]) for j in range(self.n)]
        q = queue.Queue()
        rf = make_raft(self.ends[i], i, self.saved[i], q)
        self.rafts[i] = rf
        for j in range(self.n):
            self.ends[j][i].target = rf
            self.ends[i][j].target = self.rafts[j]
        threading.Thread(target=self._apply, args=(i, q, rf), daemon=True).start()

    def _apply(self, i, q, rf):
        while not rf.killed():
            try:
                m = q.get(timeout=0.1)
            except queue.Empty:
                continue
            if m.command_valid:
                with self.lock:
                    self.logs[i][m.command_index] = m.command

    def _set(self, i, flag):
        self.connected[i] = flag
        for j in range(self.n):
            both = self.connected[i] and self.connected[j]
            self.ends[i][j].connected = both
            self.ends[j][i].connected = both

    def disconnect(self, i):
        self._set(i, False)

    def connect(self, i):
        self._set(i, True)

    def leaders(self):
        found = {}
        for i, rf in enumerate(self.rafts):
            if self.connected[i]:
                term, lead = rf.get_state()
                if lead:
                    found.setdefault(term, []).append(i)
        return found

    def check_one_leader(self):
        deadline = time.monotonic() + 8
        while time.monotonic() < deadline:
            time.sleep(0.3)
            found = self.leaders()
            for members in found.values():
                assert len(members) == 1
            if found:
                return found[max(found)][0]
        raise AssertionError("no leader")

    def n_committed(self, index):
        with self.lock:
            values = [log[index] for log in self.logs if index in log]
        assert len(set(map(repr, values))) <= 1
        return len(values), (values[0] if values else None)

    def one(self, cmd, expected):
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            for i, rf in enumerate(self.rafts):
                if self.connected[i]:
                    index, _, ok = rf.start(cmd)
                    if ok:
                        t1 = time.monotonic()
                        while time.monotonic() - t1 < 2:
                            nd, got = self.n_committed(index)
                            if nd >= expected and got == cmd:
                                return index
                            time.sleep(0.02)
                        break
            time.sleep(0.05)
        raise AssertionError(f"one({cmd}) failed")

    def cleanup(self):
        for rf in self.rafts:
            rf.kill()


@pytest.fixture
def cluster3():
    c = Cluster(3)
    yield c
    c.cleanup()


@pytest.fixture
def lone():
    rf = make_raft([Peer(), Peer(), Peer()], 0, Persister(), queue.Queue())
    yield rf
    rf.kill()


def test_peer_disconnected_returns_none():
    assert Peer(target=None).call("request_vote", RequestVoteArgs()) is None


def test_peer_unknown_method(lone):
    with pytest.raises(ValueError):
        Peer(target=lone).call("bogus", None)


def test_start_on_follower_refused(lone):
    index, _, ok = lone.start(5)
    assert index == -1 and ok is False


def test_request_vote_grant_and_persist(lone):
    reply = lone.request_vote(RequestVoteArgs(term=100, candidate_id=2))
    assert reply.vote_granted and reply.term == 100
    state = decode_state(lone._persister.read_raft_state())
    assert state.current_term == 100 and state.voted_for == 2
    second = lone.request_vote(RequestVoteArgs(term=100, candidate_id=1))
    assert second.vote_granted is False
    stale = lone.request_vote(RequestVoteArgs(term=50, candidate_id=1))
    assert stale.vote_granted is False and stale.term == 100


def test_append_entries_then_reject_gap(lone):
    entries = [Entry("a", 100, 1), Entry("b", 100, 2)]
    reply = lone.append_entries(AppendEntriesArgs(100, 1, 0, 0, entries, 0))
    assert reply.success and reply.first_index == 2
    gap = lone.append_entries(AppendEntriesArgs(100, 1, 5, 100, [], 0))
    assert gap.success is False and gap.first_index == 3
    old = lone.append_entries(AppendEntriesArgs(1, 1, 0, 0, [], 0))
    assert old.success is False and old.term == 100


def test_install_snapshot_delivers():
    q = queue.Queue()
    rf = make_raft([Peer(), Peer(), Peer()], 0, Persister(), q)
    try:
        rf.install_snapshot(InstallSnapshotArgs(100, 1, 7, 90, b"snap"))
        msg = q.get(timeout=2)
        assert msg.snapshot_valid and msg.snapshot == b"snap" and msg.snapshot_index == 7
        assert rf._persister.read_snapshot() == b"snap"
    finally:
        rf.kill()


def test_initial_election(cluster3):
    leader = cluster3.check_one_leader()
    time.sleep(0.05)
    terms = {rf.get_state()[0] for rf in cluster3.rafts}
    assert len(terms) == 1 and min(terms) >= 1
    persisted = decode_state(cluster3.saved[leader].read_raft_state())
    assert persisted.current_term == cluster3.rafts[leader].get_state()[0]


def test_re_election(cluster3):
    leader1 = cluster3.check_one_leader()
    term1 = decode_state(cluster3.saved[leader1].read_raft_state()).current_term
    cluster3.disconnect(leader1)
    leader2 = cluster3.check_one_leader()
    assert leader2 != leader1
    term2 = decode_state(cluster3.saved[leader2].read_raft_state()).current_term
    assert term2 > term1
    cluster3.connect(leader1)
    assert cluster3.check_one_leader() in range(3)


def test_basic_agree(cluster3):
    for index in range(1, 4):
        assert cluster3.n_committed(index)[0] == 0
        assert cluster3.one(index * 100, 3) == index
    leader = cluster3.check_one_leader()
    persisted = decode_state(cluster3.saved[leader].read_raft_state())
    assert persisted.current_term >= 1


def test_fail_no_agree():
    c = Cluster(5)
    try:
        c.one(10, 5)
        leader = c.check_one_leader()
        for k in (1, 2, 3):
            c.disconnect((leader + k) % 5)
        index, _, ok = c.rafts[leader].start(20)
        assert ok and index == 2
        time.sleep(2)
        assert c.n_committed(index)[0] == 0
        for k in (1, 2, 3):
            c.connect((leader + k) % 5)
        assert c.one(1000, 5) >= 2
        terms = [decode_state(p.read_raft_state()).current_term for p in c.saved]
        assert min(terms) >= 1
    finally:
        c.cleanup()


def test_persist_restart(cluster3):
    cluster3.one(11, 3)
    for i in range(3):
        cluster3.start1(i)
    assert cluster3.one(12, 3) == 2
    leader = cluster3.check_one_leader()
    before = decode_state(cluster3.saved[leader].read_raft_state()).current_term
    cluster3.start1(leader)
    after = decode_state(cluster3.saved[leader].read_raft_state()).current_term
    assert after >= before
    assert cluster3.one(13, 3) == 3