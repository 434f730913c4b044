"""
Payment Journal Module for paychan.

Append-only log of payments per channel. Payment values are cumulative
claims, so the channel's current claimed spend is the payment with the
greatest value, never the most recently inserted one. A replayed older
payment can therefore never roll the claim back.
"""

from .errors import Result, invariant_violation, not_found, success
from .models import KIND_PAYMENT, Payment
from .record_store import RecordStore


class PaymentJournal:
    """Records payments and answers the maximal-payment query."""

    def __init__(self, store: RecordStore, plugin=None):
        self.store = store
        self.plugin = plugin

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[PaymentJournal] {msg}", level=level)

    def append(self, channel_id: str, payment: Payment) -> Result:
        """
        Record a payment against a channel. Always inserts.

        Returns:
            Result with the new document id
        """
        if payment.channel_id != channel_id:
            return invariant_violation(
                f"Payment for channel {payment.channel_id} appended to {channel_id}"
            )
        error = payment.validate()
        if error:
            return invariant_violation(error)
        return self.store.insert(KIND_PAYMENT, payment.to_dict())

    def payments(self, channel_id: str) -> Result:
        """All payments for a channel, in insertion order."""
        result = self.store.find(KIND_PAYMENT, {'channel_id': channel_id})
        if not result.ok:
            return result
        return success([Payment.from_dict(doc) for doc in result.value])

    def max_payment(self, channel_id: str) -> Result:
        """
        The payment with the greatest value for a channel.

        Among equal values the earliest inserted wins.

        Returns:
            Result with the Payment, NOT_FOUND if the channel has no
            payments, or IO_ERROR
        """
        self._log(f"Trying to find last payment for channel {channel_id}", level='debug')
        result = self.payments(channel_id)
        if not result.ok:
            return result

        payments = result.value
        self._log(f"Found {len(payments)} payment documents", level='debug')
        if not payments:
            return not_found(f"Can not find payment for channel {channel_id}")

        # max() keeps the first of equal maxima
        best = max(payments, key=lambda p: p.value)
        self._log(f"Found a maximum payment: {best.value}", level='debug')
        return success(best)
