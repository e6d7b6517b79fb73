"""Fleet layer: multi-repository sessions, worker-pool and distributed rebalancing."""
