"""Shard controller: assigns shards to replica groups, replicated over Raft."""