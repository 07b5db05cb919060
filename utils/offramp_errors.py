"""
Off-ramp error taxonomy.

Configuration errors are fatal at startup. Everything else is raised inside
the pipeline and recorded on the transaction row by whoever catches it.
"""


class OfframpError(Exception):
    """Base class for off-ramp pipeline errors"""
    pass


class ConfigurationError(OfframpError):
    """Missing or malformed secrets and credentials - fatal at startup"""
    pass


class VerificationError(OfframpError):
    """Bad webhook signature, stale timestamp or failed name enquiry"""
    pass


class NoRouteError(OfframpError):
    """A swap provider has no usable quote for the pair"""
    pass


class SwapExecutionError(OfframpError):
    """A swap was broadcast but reverted or could not be built"""
    pass


class GasFundingError(OfframpError):
    """The operator funding wallet could not top up a deposit address"""
    pass


class PayoutError(OfframpError):
    """The fiat payout provider rejected or failed a transfer"""
    pass


class ConfirmationTimeoutError(OfframpError):
    """A broadcast transaction was not mined within the polling budget"""

    def __init__(self, tx_hash: str, attempts: int):
        super().__init__(f"Transaction {tx_hash} not confirmed after {attempts} polls")
        self.tx_hash = tx_hash
        self.attempts = attempts


class StateTransitionError(OfframpError):
    """Raised when an invalid state transition is attempted"""
    pass


class TransactionRevertedError(OfframpError):
    """A mined transaction ended with status 0"""

    def __init__(self, tx_hash: str, purpose: str):
        super().__init__(f"{purpose} transaction {tx_hash} reverted")
        self.tx_hash = tx_hash
        self.purpose = purpose


class ProviderUnavailableError(PayoutError):
    """Timeout, network error or 5xx from the payout provider; the outcome of the call is unknown"""
    pass
