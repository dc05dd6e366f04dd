"""
StackLend Relayer

Watches the StackLend contracts on Stacks for borrow requests and deposits,
and replays each finalized borrow request on the Scroll borrow controller.

Usage:
    # List pending events
    stacklend-relayer check

    # Run the control API and the relay loop
    stacklend-relayer run

    # Run one sync cycle
    stacklend-relayer sync
"""

__version__ = "0.1.0"

from .config import RelayerConfig, Settings
from .decoder import BorrowPrint, DepositPrint, decode
from .errors import (
    ConfigurationError,
    ExecutionError,
    InsufficientFundsError,
    RelayerBusyError,
    RelayerError,
    SourceReadError,
    ValidationError,
)
from .evm import DestinationExecutor
from .relayer import StackLendRelayer
from .stacks import BorrowRequested, Deposited, EventKind, StacksApiClient
from .state import StateStore

__all__ = [
    "__version__",
    "RelayerConfig",
    "Settings",
    "BorrowPrint",
    "DepositPrint",
    "decode",
    "ConfigurationError",
    "ExecutionError",
    "InsufficientFundsError",
    "RelayerBusyError",
    "RelayerError",
    "SourceReadError",
    "ValidationError",
    "DestinationExecutor",
    "StackLendRelayer",
    "BorrowRequested",
    "Deposited",
    "EventKind",
    "StacksApiClient",
    "StateStore",
]
