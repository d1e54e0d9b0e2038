"""Client for the sharded key/value service."""