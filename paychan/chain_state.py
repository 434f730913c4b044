"""
Chain state lookups for paychan.

The authoritative ledger (the channel contract) owns a channel's real
state. Local records never store it; ChannelLedger asks a
ChannelStateSource on every enriched lookup.

RpcChannelStateSource reaches the ledger through a pyln-client RPC
connection. pyln's RPC object is not safe for concurrent calls, so calls
are serialized through a lock with an acquisition timeout.
"""

import threading
from typing import Any, Dict

from pyln.client import RpcError

from .models import ChannelState

# Default time to wait for the RPC lock
RPC_LOCK_TIMEOUT_SECONDS = 10


class ChainStateError(Exception):
    """Raised when the authoritative ledger cannot answer for a channel."""
    pass


class ChannelStateSource:
    """Interface to the authoritative ledger."""

    def get_channel_state(self, channel_id: str) -> ChannelState:
        """
        Return the live state of a channel.

        Raises:
            ChainStateError: if the ledger cannot be reached or answers badly
        """
        raise NotImplementedError("State source has not implemented this method")


class RpcChannelStateSource(ChannelStateSource):
    """
    Reads channel state through an RPC method.

    The method is called with {"channel_id": ...} and must answer either
    {"state": "open" | "settling" | "settled"} or {"state": 0 | 1 | 2}
    (the contract's numeric encoding).
    """

    def __init__(self, rpc, method: str = 'getchannelstate', plugin=None,
                 lock_timeout_seconds: float = RPC_LOCK_TIMEOUT_SECONDS):
        self.rpc = rpc
        self.method = method
        self.plugin = plugin
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = threading.Lock()

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[ChainState] {msg}", level=level)

    def _call(self, channel_id: str) -> Dict[str, Any]:
        acquired = self._lock.acquire(timeout=self.lock_timeout_seconds)
        if not acquired:
            raise ChainStateError(
                f"RPC lock acquisition timed out after {self.lock_timeout_seconds}s"
            )
        try:
            return self.rpc.call(self.method, {"channel_id": channel_id})
        finally:
            self._lock.release()

    def get_channel_state(self, channel_id: str) -> ChannelState:
        try:
            response = self._call(channel_id)
        except RpcError as e:
            self._log(f"{self.method} failed for {channel_id}: {e}", level='warn')
            raise ChainStateError(f"{self.method} failed for {channel_id}: {e}") from e
        except OSError as e:
            self._log(f"RPC connection error for {channel_id}: {e}", level='warn')
            raise ChainStateError(f"RPC connection error: {e}") from e

        if not isinstance(response, dict) or 'state' not in response:
            raise ChainStateError(
                f"{self.method} returned no state for {channel_id}: {response!r}"
            )
        try:
            return ChannelState.parse(response['state'])
        except ValueError as e:
            raise ChainStateError(str(e)) from e
