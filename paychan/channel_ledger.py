"""
Channel Ledger Module for paychan.

Owns the local channel records. A channel is materialized the first time
this layer learns of it and afterwards only its spend moves, upward.

Channel lifecycle as seen from here:

    ABSENT --save()--> OPEN --save()/save_spending()--> OPEN ... --> SETTLED
                                                                 (external)

Spend guard (checked under the write lock):
- 0 <= spent <= value on creation
- a new spent must be >= the stored spent and <= the stored value
Anything else is rejected as INVARIANT_VIOLATION and nothing is written.

Fields other than spent are immutable after creation; save() with a
differing sender, receiver or value keeps the stored ones.
"""

from typing import Any, Dict, List

from .chain_state import ChannelStateSource
from .errors import (
    Result, StoreAbort, StoreError, ErrorKind,
    io_error, invariant_violation, success
)
from .models import KIND_CHANNEL, PaymentChannel
from .record_store import RecordStore


def _check_amount(name: str, amount: Any) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise StoreAbort(StoreError(
            ErrorKind.INVARIANT_VIOLATION,
            f"Channel {name} must be an integer, got {amount!r}"
        ))


class ChannelLedger:
    """
    Channel records plus live state enrichment.

    Both sender/receiver lookups return lists: nothing here stops two
    channels from sharing a (sender, receiver) pair.
    """

    def __init__(self, store: RecordStore, state_source: ChannelStateSource,
                 plugin=None):
        """
        Args:
            store: RecordStore holding the channel documents
            state_source: Authoritative ledger used to enrich lookups
            plugin: Optional plugin reference for logging
        """
        self.store = store
        self.state_source = state_source
        self.plugin = plugin

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[ChannelLedger] {msg}", level=level)

    def _channels(self, filters: Dict[str, Any]) -> Result:
        result = self.store.find(KIND_CHANNEL, filters)
        if not result.ok:
            return result
        return success([PaymentChannel.from_dict(doc) for doc in result.value])

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def find_by_sender_receiver(self, sender: str, receiver: str) -> Result:
        """Channels from sender to receiver (unordered, possibly several)."""
        return self._channels({'sender': sender, 'receiver': receiver})

    def find_by_sender_receiver_channel_id(self, sender: str, receiver: str,
                                           channel_id: str) -> Result:
        """
        Channels matching all three keys.

        Logically 0 or 1, but callers get a list and must handle more.
        """
        return self._channels({
            'sender': sender,
            'receiver': receiver,
            'channel_id': channel_id,
        })

    def list_all(self) -> Result:
        """Every channel in this namespace."""
        return self._channels({})

    def find_by_channel_id(self, channel_id: str) -> Result:
        """
        Look up a channel and attach its live state from the ledger.

        Fails closed: if the ledger lookup fails the whole call fails, a
        channel is never returned without its state.

        Returns:
            Result with the enriched PaymentChannel, NOT_FOUND, or IO_ERROR
        """
        result = self.store.find_one(KIND_CHANNEL, {'channel_id': channel_id})
        if not result.ok:
            return result

        try:
            state = self.state_source.get_channel_state(channel_id)
        except Exception as e:
            self._log(f"State lookup failed for {channel_id}: {e}", level='warn')
            return io_error(f"State lookup failed for channel {channel_id}: {e}", e)

        return success(PaymentChannel.from_dict(result.value, state=state))

    # =========================================================================
    # WRITES
    # =========================================================================

    def _apply_spend(self, stored: PaymentChannel, spent: Any) -> PaymentChannel:
        """Guarded spend update; must run inside a transaction."""
        _check_amount('spent', spent)
        if spent < stored.spent:
            raise StoreAbort(StoreError(
                ErrorKind.INVARIANT_VIOLATION,
                f"Spend for channel {stored.channel_id} cannot decrease "
                f"({stored.spent} -> {spent})"
            ))
        if spent > stored.value:
            raise StoreAbort(StoreError(
                ErrorKind.INVARIANT_VIOLATION,
                f"Spend {spent} exceeds deposit {stored.value} "
                f"for channel {stored.channel_id}"
            ))
        if spent != stored.spent:
            self.store.update(
                KIND_CHANNEL, {'channel_id': stored.channel_id}, {'spent': spent}
            ).unwrap()
            self._log(
                f"Channel {stored.channel_id} spent {stored.spent} -> {spent}",
                level='debug'
            )
        stored.spent = spent
        return stored

    def _save_locked(self, channel: PaymentChannel) -> PaymentChannel:
        existing = self.store.find_one(KIND_CHANNEL, {'channel_id': channel.channel_id})
        if existing.ok:
            stored = PaymentChannel.from_dict(existing.value)
            if (stored.sender, stored.receiver, stored.value) != \
                    (channel.sender, channel.receiver, channel.value):
                self._log(
                    f"Ignoring changes to immutable fields of channel {channel.channel_id}",
                    level='debug'
                )
            return self._apply_spend(stored, channel.spent)
        if not existing.is_not_found:
            existing.unwrap()

        _check_amount('value', channel.value)
        _check_amount('spent', channel.spent)
        if channel.value < 0:
            raise StoreAbort(StoreError(
                ErrorKind.INVARIANT_VIOLATION,
                f"Deposit for channel {channel.channel_id} cannot be negative"
            ))
        if not 0 <= channel.spent <= channel.value:
            raise StoreAbort(StoreError(
                ErrorKind.INVARIANT_VIOLATION,
                f"Spend {channel.spent} outside [0, {channel.value}] "
                f"for new channel {channel.channel_id}"
            ))

        self.store.insert(KIND_CHANNEL, channel.to_dict()).unwrap()
        self._log(
            f"Opened channel {channel.channel_id} "
            f"({channel.sender} -> {channel.receiver}, value={channel.value})"
        )
        return PaymentChannel.from_dict(channel.to_dict())

    def save(self, channel: PaymentChannel) -> Result:
        """
        Create the channel if unknown, otherwise ratchet its spend.

        The existence check and the write happen in one transaction, so two
        concurrent saves for the same channel can neither both insert nor
        lose an update.

        Returns:
            Result with the stored PaymentChannel (state not enriched),
            INVARIANT_VIOLATION, or IO_ERROR
        """
        if not channel.channel_id:
            return invariant_violation("Channel id must not be empty")
        return self.store.atomic(
            lambda: self._save_locked(channel),
            f"save channel {channel.channel_id}"
        )

    def _save_spending_locked(self, channel_id: str, spent: Any) -> PaymentChannel:
        stored = PaymentChannel.from_dict(
            self.store.find_one(KIND_CHANNEL, {'channel_id': channel_id}).unwrap()
        )
        return self._apply_spend(stored, spent)

    def save_spending(self, channel_id: str, spent: int) -> Result:
        """
        Ratchet the spend of an existing channel.

        Returns:
            Result with the stored PaymentChannel, NOT_FOUND,
            INVARIANT_VIOLATION, or IO_ERROR
        """
        return self.store.atomic(
            lambda: self._save_spending_locked(channel_id, spent),
            f"save spending for channel {channel_id}"
        )
