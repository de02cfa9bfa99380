"""patroni-lb: keeps an HAProxy config in sync with a Patroni cluster.

Watches the cluster's subtree in ZooKeeper, derives the primary and the
running replicas, renders a deterministic HAProxy config and hands it to
HAProxy with a start-then-graceful-reload protocol.
"""
