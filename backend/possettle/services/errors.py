# Overview: Error taxonomy for settlement and cash session operations.

"""
Settlement Engine Errors

Every error carries a stable ``kind`` code. Routes return the kind to the
caller as part of an explicit JSON result; services raise before mutating
anything so a failed operation never leaves partial state behind.
"""


class SettlementEngineError(Exception):
    """Base class for settlement and cash session errors."""
    kind = "SettlementEngineError"

    def __init__(self, message: str | None = None, **context):
        super().__init__(message or self.kind)
        self.context = context

    def to_dict(self) -> dict:
        d = {"error": str(self), "kind": self.kind}
        if self.context:
            d["context"] = self.context
        return d


class InvalidAmount(SettlementEngineError):
    """Non-positive or out-of-range amount."""
    kind = "InvalidAmount"


class OverCollection(SettlementEngineError):
    """Tender would push collection past the sale total beyond policy."""
    kind = "OverCollection"


class InvalidStateTransition(SettlementEngineError):
    """Operation not allowed in the tender's, settlement's, or session's current state."""
    kind = "InvalidStateTransition"


class InvalidInstrumentDetails(SettlementEngineError):
    """Instrument payload does not fit the tender kind."""
    kind = "InvalidInstrumentDetails"


class SessionClosed(SettlementEngineError):
    kind = "SessionClosed"


class SessionNotOpen(SettlementEngineError):
    kind = "SessionNotOpen"


class SessionAlreadyOpen(SettlementEngineError):
    kind = "SessionAlreadyOpen"


class NoOpenSession(SettlementEngineError):
    kind = "NoOpenSession"


class NotSessionOwner(SettlementEngineError):
    """Operator does not own the session and no manager override was given."""
    kind = "NotSessionOwner"


class NotFound(SettlementEngineError):
    kind = "NotFound"


class GatewayTimeout(SettlementEngineError):
    """Verification gateway did not answer in time. Tender stays UNVERIFIED."""
    kind = "GatewayTimeout"


class GatewayUnavailable(SettlementEngineError):
    """Verification gateway unreachable or misconfigured. Tender stays UNVERIFIED."""
    kind = "GatewayUnavailable"


class LedgerCorruption(SettlementEngineError):
    """Stored movement sequence is not contiguous or not chronological. Fatal."""
    kind = "LedgerCorruption"
