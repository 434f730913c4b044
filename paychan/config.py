"""
Configuration module for paychan

Contains the StoreConfig dataclass that holds the storage location and
namespace for a payment channel store, plus the few tunables the SQLite
backend and the chain-state RPC adapter need.

Implements the ConfigSnapshot pattern from cl-hive so a store built from a
config is not affected by later mutation of that config.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, FrozenSet


# Keys that cannot be changed once a store is open
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'namespace',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'namespace': str,
    'busy_timeout_seconds': float,
    'rpc_lock_timeout_seconds': float,
    'chain_state_method': str,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'busy_timeout_seconds': (0.1, 300.0),
    'rpc_lock_timeout_seconds': (0.1, 120.0),
}

# Separator between namespace and kind in stored documents
NAMESPACE_SEPARATOR = ':'

DEFAULT_DB_PATH = '~/.lightning/paychan.db'
DEFAULT_CHAIN_STATE_METHOD = 'getchannelstate'


def _parse_float(value: Any, default: float) -> float:
    """Parse a float-ish option value, falling back to default."""
    if value is None or value == '':
        return default
    return float(value)


@dataclass
class StoreConfig:
    """
    Configuration container for a payment channel store.

    Only db_path and namespace shape the stored data; the rest are
    operational knobs.
    """

    # Database path
    db_path: str = DEFAULT_DB_PATH

    # Optional prefix isolating this store's documents in a shared database
    namespace: Optional[str] = None

    # How long a writer waits for the SQLite write lock
    busy_timeout_seconds: float = 10.0

    # Chain state lookups (authoritative ledger over RPC)
    rpc_lock_timeout_seconds: float = 10.0
    chain_state_method: str = DEFAULT_CHAIN_STATE_METHOD

    # Internal version tracking
    _version: int = field(default=0, repr=False, compare=False)

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'StoreConfig':
        """
        Build a config from plugin-style options (all values may be strings).

        Recognised keys: paychan-db-path, paychan-namespace,
        paychan-busy-timeout, paychan-rpc-lock-timeout,
        paychan-chain-state-method.
        """
        namespace = options.get('paychan-namespace')
        if isinstance(namespace, str):
            namespace = namespace.strip() or None
        return cls(
            db_path=options.get('paychan-db-path') or DEFAULT_DB_PATH,
            namespace=namespace,
            busy_timeout_seconds=_parse_float(
                options.get('paychan-busy-timeout'), 10.0),
            rpc_lock_timeout_seconds=_parse_float(
                options.get('paychan-rpc-lock-timeout'), 10.0),
            chain_state_method=(options.get('paychan-chain-state-method')
                                or DEFAULT_CHAIN_STATE_METHOD),
        )

    def update(self, **kwargs) -> Optional[str]:
        """
        Change mutable fields in place.

        Returns:
            Error message if rejected, None if applied
        """
        changes = {}
        for key, value in kwargs.items():
            if key in IMMUTABLE_CONFIG_KEYS:
                return f"Config {key} is immutable"
            if key not in CONFIG_FIELD_TYPES:
                return f"Unknown config key: {key}"
            expected = CONFIG_FIELD_TYPES[key]
            if expected is float and isinstance(value, int):
                value = float(value)
            if not isinstance(value, expected):
                return f"Config {key} must be {expected.__name__}"
            if key in CONFIG_FIELD_RANGES:
                min_val, max_val = CONFIG_FIELD_RANGES[key]
                if not (min_val <= value <= max_val):
                    return f"Config {key}={value} out of range [{min_val}, {max_val}]"
            changes[key] = value
        for key, value in changes.items():
            setattr(self, key, value)
        self._version += 1
        return None

    def snapshot(self) -> 'StoreConfigSnapshot':
        """Create an immutable snapshot for a store instance."""
        return StoreConfigSnapshot.from_config(self)

    def validate(self) -> Optional[str]:
        """
        Validate configuration values.

        Returns:
            Error message if invalid, None if valid
        """
        if not self.db_path:
            return "db_path must not be empty"

        if self.namespace is not None:
            if not isinstance(self.namespace, str) or not self.namespace:
                return "namespace must be a non-empty string or None"
            if NAMESPACE_SEPARATOR in self.namespace:
                return f"namespace must not contain '{NAMESPACE_SEPARATOR}'"

        if not self.chain_state_method:
            return "chain_state_method must not be empty"

        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key, None)
            if value is not None and not (min_val <= value <= max_val):
                return f"Config {key}={value} out of range [{min_val}, {max_val}]"

        return None


@dataclass(frozen=True)
class StoreConfigSnapshot:
    """Immutable configuration captured when a store is opened."""

    db_path: str
    namespace: Optional[str]
    busy_timeout_seconds: float
    rpc_lock_timeout_seconds: float
    chain_state_method: str
    version: int

    @classmethod
    def from_config(cls, config: StoreConfig) -> 'StoreConfigSnapshot':
        """Create a frozen snapshot from mutable config."""
        return cls(
            db_path=config.db_path,
            namespace=config.namespace,
            busy_timeout_seconds=config.busy_timeout_seconds,
            rpc_lock_timeout_seconds=config.rpc_lock_timeout_seconds,
            chain_state_method=config.chain_state_method,
            version=config._version,
        )
