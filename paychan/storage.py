"""
Storage facade for paychan

Wires the record store, channel ledger, payment journal and token
authority over one SQLite database and namespace, and provides the
operations that span more than one of them.

Cross-component operations (accept_payment, sync_spent) run in a single
transaction: reading the journal maximum and writing the channel spend
cannot interleave with another payment for the same channel, so a smaller
payment can never overwrite the spend set by a larger one.
"""

from typing import Optional

from .chain_state import ChannelStateSource, RpcChannelStateSource
from .channel_ledger import ChannelLedger
from .config import StoreConfig
from .errors import Result
from .models import KIND_CHANNEL, Payment, PaymentChannel
from .payment_journal import PaymentJournal
from .record_store import RecordStore
from .token_authority import TokenAuthority


class PaymentChannelStore:
    """
    Persistence layer for one payment channel receiver.

    All operations return a Result; see paychan.errors.
    """

    def __init__(self, config: StoreConfig, state_source: ChannelStateSource,
                 plugin=None):
        """
        Args:
            config: Store configuration (snapshotted here)
            state_source: Authoritative ledger for live channel state
            plugin: Reference to the pyln Plugin (or proxy) for logging

        Raises:
            ValueError: if the configuration is invalid
        """
        error = config.validate()
        if error:
            raise ValueError(error)

        self.config = config.snapshot()
        self.plugin = plugin
        self.store = RecordStore(
            self.config.db_path,
            plugin,
            namespace=self.config.namespace,
            busy_timeout_seconds=self.config.busy_timeout_seconds,
        )
        self.ledger = ChannelLedger(self.store, state_source, plugin)
        self.journal = PaymentJournal(self.store, plugin)
        self.tokens = TokenAuthority(self.store, plugin)

    @classmethod
    def from_rpc(cls, config: StoreConfig, rpc, plugin=None) -> 'PaymentChannelStore':
        """Build a store whose channel state comes from an RPC connection."""
        source = RpcChannelStateSource(
            rpc,
            method=config.chain_state_method,
            plugin=plugin,
            lock_timeout_seconds=config.rpc_lock_timeout_seconds,
        )
        return cls(config, source, plugin)

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Storage] {msg}", level=level)

    def initialize(self) -> None:
        """Create the schema. Raises sqlite3.Error if the database is unusable."""
        self.store.initialize()
        namespace = self.config.namespace or '(none)'
        self._log(f"Initialized at {self.config.db_path} namespace={namespace}")

    def close(self) -> None:
        self.store.close()

    # =========================================================================
    # CHANNELS
    # =========================================================================

    def channels_by_sender_receiver(self, sender: str, receiver: str) -> Result:
        return self.ledger.find_by_sender_receiver(sender, receiver)

    def channels_by_sender_receiver_channel_id(self, sender: str, receiver: str,
                                               channel_id: str) -> Result:
        return self.ledger.find_by_sender_receiver_channel_id(sender, receiver, channel_id)

    def channel_by_channel_id(self, channel_id: str) -> Result:
        return self.ledger.find_by_channel_id(channel_id)

    def channels(self) -> Result:
        return self.ledger.list_all()

    def save_channel(self, channel: PaymentChannel) -> Result:
        return self.ledger.save(channel)

    def save_channel_spending(self, channel_id: str, spent: int) -> Result:
        return self.ledger.save_spending(channel_id, spent)

    # =========================================================================
    # PAYMENTS AND TOKENS
    # =========================================================================

    def save_token(self, token: str, payment: Payment) -> Result:
        return self.tokens.issue(token, payment)

    def check_token(self, token: str) -> Result:
        return self.tokens.is_valid(token)

    def last_payment(self, channel_id: str) -> Result:
        return self.journal.max_payment(channel_id)

    # =========================================================================
    # CROSS-COMPONENT OPERATIONS
    # =========================================================================

    def _sync_spent_locked(self, channel_id: str) -> PaymentChannel:
        best = self.journal.max_payment(channel_id).unwrap()
        return self.ledger.save_spending(channel_id, best.value).unwrap()

    def sync_spent(self, channel_id: str) -> Result:
        """
        Set a channel's spend to its maximal recorded payment.

        Returns:
            Result with the updated PaymentChannel; NOT_FOUND if the channel
            or its payments are missing; INVARIANT_VIOLATION if that would
            lower the spend or exceed the deposit
        """
        return self.store.atomic(
            lambda: self._sync_spent_locked(channel_id),
            f"sync spent for channel {channel_id}"
        )

    def _accept_locked(self, token: str, payment: Payment, sender: str,
                       receiver: str, deposit: int) -> PaymentChannel:
        existing = self.store.find_one(KIND_CHANNEL, {'channel_id': payment.channel_id})
        if existing.is_not_found:
            self.ledger.save(
                PaymentChannel(sender, receiver, payment.channel_id, deposit, 0)
            ).unwrap()
        else:
            existing.unwrap()
        self.tokens.issue(token, payment).unwrap()
        return self._sync_spent_locked(payment.channel_id)

    def accept_payment(self, token: str, payment: Payment, sender: str,
                       receiver: str, deposit: int) -> Result:
        """
        Record a validated payment end to end.

        In one transaction: materialize the channel if this is its first
        payment, issue the token with the payment, then ratchet the channel
        spend to the journal maximum. If any step fails nothing is written.

        Args:
            token: Unique token for this payment (see payment_token())
            payment: Signature-checked payment
            sender, receiver, deposit: Channel facts from the ledger, used
                only when the channel is not yet known locally

        Returns:
            Result with the updated PaymentChannel
        """
        result = self.store.atomic(
            lambda: self._accept_locked(token, payment, sender, receiver, deposit),
            f"accept payment for channel {payment.channel_id}"
        )
        if result.ok:
            self._log(
                f"Accepted payment {payment.value} on channel {payment.channel_id}",
                level='debug'
            )
        else:
            self._log(
                f"Rejected payment on channel {payment.channel_id}: {result.error.message}",
                level='warn'
            )
        return result
