"""Raft consensus peer, its log, messages and persistent storage."""