"""
Token Authority Module for paychan.

Issues single-use tokens bound to a payment and answers "did this store
issue this token". A token stays valid for that question forever; expiry
and consumption are decided elsewhere.

Precondition: callers supply unique tokens. Duplicate values are not
detected here, which is why payment_token() derives one from the payment
itself.
"""

import hashlib
from typing import Optional

from .errors import Result, invariant_violation, success
from .models import KIND_PAYMENT, KIND_TOKEN, Payment, Token, parse_recovery_id
from .record_store import RecordStore


def payment_token(payment: Payment, salt: Optional[str] = None) -> str:
    """
    Derive a token as sha256 over the payment's channel, value and signature.

    A salt can be mixed in when the same payment may legitimately be
    presented more than once.

    Raises:
        ValueError: if payment.v is not an integer or numeric string
    """
    digest = hashlib.sha256()
    for part in (payment.channel_id, str(payment.value), str(parse_recovery_id(payment.v)),
                 payment.r, payment.s, salt or ''):
        digest.update(part.encode('utf-8'))
        digest.update(b'\x00')
    return digest.hexdigest()


class TokenAuthority:
    """Atomic token + payment issuance and token checks."""

    def __init__(self, store: RecordStore, plugin=None):
        self.store = store
        self.plugin = plugin

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[TokenAuthority] {msg}", level=level)

    def _issue_locked(self, token: str, payment: Payment) -> None:
        self.store.insert(KIND_TOKEN, Token(token, payment.channel_id).to_dict()).unwrap()
        doc = payment.to_dict()
        doc['token'] = token
        self.store.insert(KIND_PAYMENT, doc).unwrap()

    def issue(self, token: str, payment: Payment) -> Result:
        """
        Save a token together with the payment it was issued for.

        Both documents are written in one transaction: if either write fails
        neither is visible afterwards.

        Returns:
            Result with None on success, INVARIANT_VIOLATION or IO_ERROR
        """
        if not token:
            return invariant_violation("Token must not be empty")
        error = payment.validate()
        if error:
            return invariant_violation(error)
        result = self.store.atomic(
            lambda: self._issue_locked(token, payment),
            f"issue token for channel {payment.channel_id}"
        )
        if result.ok:
            self._log(
                f"Issued token for channel {payment.channel_id} (value={payment.value})",
                level='debug'
            )
        return result

    def is_valid(self, token: str) -> Result:
        """
        Check whether this store issued the token.

        Returns:
            Result with True/False, or IO_ERROR
        """
        result = self.store.find_one(KIND_TOKEN, {'token': token})
        if result.ok:
            self._log(f"Found a token document for token {token}", level='debug')
            return success(True)
        if result.is_not_found:
            self._log(f"Can not find a token document for token {token}", level='debug')
            return success(False)
        return result
