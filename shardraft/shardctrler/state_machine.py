"""The shard controller's state machine: the history of configurations."""

from __future__ import annotations

from typing import Mapping, Sequence

from shardraft.shardctrler.ctrl_common import N_SHARDS, Config, default_config


def group_to_shards(config: Config) -> dict[int, list[int]]:
    """Map every group, and every gid a shard points at, to its shards."""
    result: dict[int, list[int]] = {gid: [] for gid in config.groups}
    for shard, gid in enumerate(config.shards):
        result.setdefault(gid, []).append(shard)
    return result


def gid_with_minimum_shards(group2shards: Mapping[int, Sequence[int]]) -> int:
    """The valid gid holding fewest shards, lowest gid first; -1 if none."""
    best, fewest = -1, N_SHARDS + 1
    for gid in sorted(group2shards):
        if gid != 0 and len(group2shards[gid]) < fewest:
            best, fewest = gid, len(group2shards[gid])
    return best


def gid_with_maximum_shards(group2shards: Mapping[int, Sequence[int]]) -> int:
    """The gid holding most shards, lowest gid first.

    Group 0 wins whenever it still holds shards, so they get handed out first.
    """
    if group2shards.get(0):
        return 0
    best, most = -1, -1
    for gid in sorted(group2shards):
        if len(group2shards[gid]) > most:
            best, most = gid, len(group2shards[gid])
    return best


def _shards_from(group2shards: Mapping[int, Sequence[int]]) -> list[int]:
    shards = [0] * N_SHARDS
    for gid, owned in group2shards.items():
        for shard in owned:
            shards[shard] = gid
    return shards


class MemoryConfig:
    """Keeps every configuration in memory; each change appends a new one."""

    def __init__(self) -> None:
        self.configs: list[Config] = [default_config()]

    def _next_config(self) -> Config:
        config = self.configs[-1].copy()
        config.num = len(self.configs)
        return config

    def join(self, groups: Mapping[int, Sequence[str]]) -> None:
        """Add new groups and rebalance, moving as few shards as possible."""
        config = self._next_config()
        for gid, servers in groups.items():
            if gid not in config.groups:
                config.groups[gid] = list(servers)
        g2s = group_to_shards(config)
        while True:
            source = gid_with_maximum_shards(g2s)
            target = gid_with_minimum_shards(g2s)
            if source != 0 and len(g2s[source]) - len(g2s.get(target, [])) <= 1:
                break
            g2s.setdefault(target, []).append(g2s[source].pop(0))
        config.shards = _shards_from(g2s)
        self.configs.append(config)

    def leave(self, gids: Sequence[int]) -> None:
        """Remove groups and hand their shards to the least loaded remaining ones."""
        config = self._next_config()
        g2s = group_to_shards(config)
        orphans: list[int] = []
        for gid in gids:
            config.groups.pop(gid, None)
            if gid in g2s:
                orphans.extend(g2s.pop(gid))
        shards = [0] * N_SHARDS
        if config.groups:
            for shard in orphans:
                gid = gid_with_minimum_shards(g2s)
                g2s.setdefault(gid, []).append(shard)
            shards = _shards_from(g2s)
        config.shards = shards
        self.configs.append(config)

    def move(self, shard: int, gid: int) -> None:
        """Assign one shard to ``gid`` in a new configuration."""
        if not 0 <= shard < N_SHARDS:
            raise IndexError(f"shard {shard} outside [0, {N_SHARDS})")
        config = self._next_config()
        config.shards[shard] = gid
        self.configs.append(config)

    def query(self, num: int) -> Config:
        """Return configuration ``num``, or the latest if ``num`` is out of range."""
        if num < 0 or num >= len(self.configs):
            return self.configs[-1].copy()
        return self.configs[num].copy()