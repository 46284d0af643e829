"""Raft consensus node and the messages it exchanges."""