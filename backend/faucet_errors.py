# faucet_errors.py
from typing import Optional


class FaucetError(Exception):
    """Base class for every failure raised by the disbursement engine."""


class InvalidArgument(FaucetError, ValueError):
    """Bad calculator / configuration input."""


class NotEligible(FaucetError):
    def __init__(self, reason: str):
        super().__init__(f"not eligible: {reason}")
        self.reason = reason


class InvalidAddress(FaucetError):
    pass


class InsufficientFunds(FaucetError):
    def __init__(self, available: int, needed: int):
        super().__init__(f"insufficient funds: have {available} sat, need {needed} sat")
        self.available = available
        self.needed = needed


class SigningError(FaucetError):
    """The faucet key cannot produce a valid signature for an input."""


class UnbalancedTransaction(FaucetError):
    """Built inputs do not equal outputs plus fee; nothing was signed."""


class NodeRpcError(FaucetError):
    pass


class LedgerError(FaucetError):
    pass


class LedgerUnavailable(LedgerError):
    """The backing store could not be reached or the write did not commit."""


class RecordNotFound(LedgerError):
    pass


class BroadcastFailed(FaucetError):
    pass


class FinalizationFailed(FaucetError):
    """
    The transaction may already be live on the network but the ledger could not
    be updated. Carries the txid so an operator can reconcile by hand.
    """

    def __init__(self, txid: Optional[str], message: str = ""):
        super().__init__(message or f"failed to finalize ledger record for txid={txid}")
        self.txid = txid


class DisbursementCancelled(FaucetError):
    pass
