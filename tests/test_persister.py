import threading

from shardraft.raft.persister import Persister


def test_new_persister_is_empty():
    ps = Persister()
    assert ps.read_raft_state() == b""
    assert ps.read_snapshot() == b""
    assert ps.raft_state_size() == 0
    assert ps.snapshot_size() == 0


def test_save_and_read_back():
    ps = Persister()
    ps.save(b"state-bytes", b"snap")
    assert ps.read_raft_state() == b"state-bytes"
    assert ps.read_snapshot() == b"snap"
    assert ps.raft_state_size() == len(b"state-bytes")
    assert ps.snapshot_size() == len(b"snap")


def test_save_none_counts_as_empty():
    ps = Persister()
    ps.save(b"abc", b"def")
    ps.save(None, None)
    assert ps.read_raft_state() == b""
    assert ps.snapshot_size() == 0


def test_saved_data_is_isolated_from_caller_buffer():
    ps = Persister()
    buf = bytearray(b"hello")
    ps.save(buf, buf)
    buf[0] = ord("J")
    assert ps.read_raft_state() == b"hello"
    assert ps.read_snapshot() == b"hello"


def test_copy_is_independent():
    ps = Persister()
    ps.save(b"one", b"snap-one")
    cp = ps.copy()
    ps.save(b"two", b"snap-two")
    assert cp.read_raft_state() == b"one"
    assert cp.read_snapshot() == b"snap-one"
    assert ps.read_raft_state() == b"two"


def test_concurrent_saves_keep_state_and_snapshot_together():
    ps = Persister()

    def writer(tag):
        for _ in range(200):
            ps.save(tag, tag)

    threads = [threading.Thread(target=writer, args=(bytes([i]) * 4,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert ps.read_raft_state() == ps.read_snapshot()