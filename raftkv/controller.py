"""Per-call status of an RPC."""

from __future__ import annotations


class RpcController:
    """Records whether an RPC call failed and why."""

    def __init__(self) -> None:
        self.failed = False
        self.error_text = ""

    def reset(self) -> None:
        """Clear any recorded failure."""
        self.failed = False
        self.error_text = ""

    def set_failed(self, reason: str) -> None:
        """Mark the call as failed with ``reason``."""
        self.failed = True
        self.error_text = reason

    def __repr__(self) -> str:
        return f"RpcController(failed={self.failed!r}, error_text={self.error_text!r})"