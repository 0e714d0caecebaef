"""Replicated key-value store on the Raft consensus algorithm, with its TCP RPC layer."""

__version__ = "0.1.0"