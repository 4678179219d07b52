"""
Error Taxonomy

Exceptions raised across the transfer core. Every class carries a stable
``code`` so callers can branch on the failure kind without string matching.

Retry guidance:
- ChainUnreachable / QueryFailed: retryable by the next poll
- AmountOutOfBounds / InsufficientBalance: user input, never auto-retried
- UnsupportedRoute: topology/config error, fatal for the route
- SigningFailed: retryable by resubmission
- TransactionFailed: surfaced with an explorer link, never auto-retried
"""

from typing import Optional


class XcmTransferError(Exception):
    """Base class for all transfer core errors"""

    code = "XcmTransferError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ChainUnreachable(XcmTransferError):
    """Transport-level failure: connect/query timed out or the socket dropped"""

    code = "ChainUnreachable"

    def __init__(self, chain: str, message: str):
        super().__init__(f"{chain}: {message}")
        self.chain = chain


class QueryFailed(XcmTransferError):
    """Transport answered but the value is unusable"""

    code = "QueryFailed"

    def __init__(self, chain: str, path: str, message: str):
        super().__init__(f"{chain} {path}: {message}")
        self.chain = chain
        self.path = path


class ValidationError(XcmTransferError):
    """User-input validation failure (transfer is rejected)"""

    code = "ValidationError"


class AmountOutOfBounds(ValidationError):
    code = "AmountOutOfBounds"


class InsufficientBalance(ValidationError):
    """Free balance does not cover amount + fee estimate"""

    code = "InsufficientBalance"

    def __init__(self, message: str, shortfall: str, fee_estimate: str):
        super().__init__(message)
        self.shortfall = shortfall
        self.fee_estimate = fee_estimate


class UnsupportedRoute(XcmTransferError):
    """No addressing rule exists for the requested (source, destination, asset)"""

    code = "UnsupportedRoute"


class SigningFailed(XcmTransferError):
    """Signer refused or was unavailable"""

    code = "SigningFailed"


class SignerNotConfigured(XcmTransferError):
    code = "SignerNotConfigured"


class TransactionFailed(XcmTransferError):
    """On-chain failure or watch-stream error after submission"""

    code = "TransactionFailed"

    def __init__(self, message: str, explorer_url: Optional[str] = None):
        super().__init__(message)
        self.explorer_url = explorer_url


class IndexerUnreachable(XcmTransferError):
    code = "IndexerUnreachable"


class InvalidAmountError(ValueError):
    """Amount text or value cannot be represented exactly"""

    code = "InvalidAmount"


class InvalidAddressError(ValueError):
    code = "InvalidAddress"


class AssetMismatchError(TypeError):
    """Arithmetic between amounts of different decimal precision"""

    code = "AssetMismatch"
