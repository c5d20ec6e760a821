"""
Exception types for cl-summars

ConfigError is raised for invalid options or per-call arguments; pyln-client
turns it into an RPC error response carrying the message.  The ledger errors
never leave the report builder.
"""


class ConfigError(ValueError):
    """An option or per-call argument failed validation."""


class MalformedEventError(ValueError):
    """A ledger event from the node is missing required fields."""


class LedgerInvariantError(RuntimeError):
    """
    A sync batch would break a ledger cache invariant.

    The batch is discarded and the cache keeps its last known-good state.
    """
    def __init__(self, kind: str, key: str, message: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} ledger invariant violated for {key}: {message}")
