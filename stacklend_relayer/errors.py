"""
Error taxonomy for the StackLend relayer.
"""

from typing import Optional


class RelayerError(Exception):
    """Base class for relayer errors."""


class ConfigurationError(RelayerError):
    """Invalid or missing configuration. Fatal at startup."""


class SourceReadError(RelayerError):
    """Network or API failure while reading the Stacks chain."""


class ValidationError(RelayerError):
    """Borrow request rejected before submission (token, recipient or amount)."""


class InsufficientFundsError(RelayerError):
    """Signer balance on the destination chain is below the operating minimum."""

    def __init__(self, balance_wei: int, minimum_wei: int):
        self.balance_wei = balance_wei
        self.minimum_wei = minimum_wei
        super().__init__(
            f"Insufficient relayer balance: {balance_wei} wei (minimum: {minimum_wei} wei)"
        )


class ExecutionError(RelayerError):
    """Destination chain call failed (RPC error or revert)."""

    def __init__(
        self,
        token: str,
        recipient: Optional[str],
        amount: int,
        cause: BaseException,
    ):
        self.token = token
        self.recipient = recipient
        self.amount = amount
        self.cause = cause
        super().__init__(
            f"Execution failed for token={token} recipient={recipient} "
            f"amount={amount}: {cause}"
        )


class DestinationUnavailableError(ExecutionError):
    """Destination RPC could not be queried before submission."""


class RelayerBusyError(RelayerError):
    """A sync cycle is already running."""

    def __init__(self) -> None:
        super().__init__("Sync already in progress")


class BatchAbortedError(RelayerError):
    """A manually triggered sync stopped at the first failing event."""

    def __init__(self, key: str, cause: RelayerError, results: dict[str, str]):
        self.key = key
        self.cause = cause
        self.results = results
        super().__init__(f"Failed to execute borrow for event {key}: {cause}")
