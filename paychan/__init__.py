"""
paychan package

Persistence and state-integrity layer for unidirectional payment channels:
- config: StoreConfig dataclass and snapshot pattern
- errors: Result values and error kinds
- models: PaymentChannel, Payment, Token, ChannelState
- record_store: namespaced JSON documents in SQLite with thread-local connections
- chain_state: authoritative ledger lookups over pyln-client RPC
- channel_ledger: channel records with monotonic spend
- payment_journal: append-only payments and the maximal-payment query
- token_authority: atomic token issuance and validity checks
- storage: facade wiring the above over one database
"""

__version__ = "0.1.0.dev0"
