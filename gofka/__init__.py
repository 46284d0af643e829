"""Raft metadata controller, consumer groups, follower replication and a cluster visualizer."""

__version__ = "0.1.0"