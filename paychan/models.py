"""
Data model for paychan.

Channels, payments and tokens as stored by the record store. Field names
here are also the document keys, so filters can use them directly.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

# Document kinds (before namespacing)
KIND_CHANNEL = 'channel'
KIND_PAYMENT = 'payment'
KIND_TOKEN = 'token'


def parse_recovery_id(v: Any) -> int:
    """
    Normalize a signature recovery id to an int.

    Accepts ints and numeric strings in any base prefix Python understands
    ("27", "0x1b").

    Raises:
        ValueError: if v is not an integer or numeric string
    """
    if isinstance(v, bool):
        raise ValueError(f"Invalid signature v: {v!r}")
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        return int(v.strip(), 0)
    raise ValueError(f"Invalid signature v: {v!r}")


class ChannelState(str, Enum):
    """
    Channel state as reported by the authoritative ledger.

    Never stored locally; read live on lookup.
    """
    OPEN = 'open'
    SETTLING = 'settling'
    SETTLED = 'settled'

    @classmethod
    def parse(cls, raw: Any) -> 'ChannelState':
        """
        Accept a state name or the contract's numeric code (0, 1, 2).

        Raises:
            ValueError: if raw is neither
        """
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"Unknown channel state: {raw!r}")
        if isinstance(raw, int):
            codes = list(cls)
            if 0 <= raw < len(codes):
                return codes[raw]
            raise ValueError(f"Unknown channel state code: {raw}")
        if isinstance(raw, str):
            return cls(raw.strip().lower())
        raise ValueError(f"Unknown channel state: {raw!r}")


@dataclass
class PaymentChannel:
    """
    One unidirectional payment channel.

    Attributes:
        sender: Account funding the channel
        receiver: Account being paid
        channel_id: Hex identifier, unique per store
        value: Total deposit, fixed at creation
        spent: Cumulative amount claimed so far (0 <= spent <= value)
        state: Live state from the ledger, None when not enriched
    """
    sender: str
    receiver: str
    channel_id: str
    value: int
    spent: int = 0
    state: Optional[ChannelState] = None

    def to_dict(self) -> Dict[str, Any]:
        """Document form. state is derived and never persisted."""
        return {
            'sender': self.sender,
            'receiver': self.receiver,
            'channel_id': self.channel_id,
            'value': self.value,
            'spent': self.spent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  state: Optional[ChannelState] = None) -> 'PaymentChannel':
        return cls(
            sender=data['sender'],
            receiver=data['receiver'],
            channel_id=data['channel_id'],
            value=data['value'],
            spent=data.get('spent', 0),
            state=state,
        )

    @property
    def remaining(self) -> int:
        return self.value - self.spent


@dataclass
class Payment:
    """
    A signed cumulative claim against a channel.

    v, r, s are the signature components; they are verified upstream and
    opaque here, except that v is normalized to an int on storage (it may
    arrive as "0x1b"). value is cumulative, not incremental.
    """
    channel_id: str
    value: int
    v: Any
    r: str
    s: str
    token: Optional[str] = None

    def validate(self) -> Optional[str]:
        """
        Check the fields this layer interprets.

        Returns:
            Error message if invalid, None if valid
        """
        if isinstance(self.value, bool) or not isinstance(self.value, int) \
                or self.value < 0:
            return f"Payment value must be a non-negative integer, got {self.value!r}"
        try:
            parse_recovery_id(self.v)
        except ValueError:
            return f"Payment signature v is not an integer: {self.v!r}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'channel_id': self.channel_id,
            'value': self.value,
            'v': parse_recovery_id(self.v),
            'r': self.r,
            's': self.s,
            'token': self.token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            channel_id=data['channel_id'],
            value=data['value'],
            v=parse_recovery_id(data['v']),
            r=data['r'],
            s=data['s'],
            token=data.get('token'),
        )


@dataclass
class Token:
    """Proof that this store issued an authorization for a payment."""
    token: str
    channel_id: str
    issued_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'token': self.token,
            'channel_id': self.channel_id,
            'issued_at': self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Token':
        return cls(
            token=data['token'],
            channel_id=data['channel_id'],
            issued_at=data.get('issued_at', 0),
        )
