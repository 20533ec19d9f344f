"""Chain access - JSON-RPC client, log fetching and live subscription."""

from burn_watcher.chain.client import (
    ChainClient,
    ChainClientError,
    InclusionResult,
    InclusionTimeoutError,
    PendingAction,
    RangeTooLargeError,
    RPCError,
    SignerNotConfiguredError,
    TransactionRejectedError,
)
from burn_watcher.chain.fetcher import RangeFetcher, split_range
from burn_watcher.chain.subscription import ConnectionState, ConnectionSupervisor, SubscriptionError
from burn_watcher.chain.transfers import (
    TRANSFER_TOPIC,
    decode_transfer_log,
    pad_topic_address,
    transfer_filter,
)

__all__ = [
    "TRANSFER_TOPIC",
    "ChainClient",
    "ChainClientError",
    "ConnectionState",
    "ConnectionSupervisor",
    "InclusionResult",
    "InclusionTimeoutError",
    "PendingAction",
    "RPCError",
    "RangeFetcher",
    "RangeTooLargeError",
    "SignerNotConfiguredError",
    "SubscriptionError",
    "TransactionRejectedError",
    "decode_transfer_log",
    "pad_topic_address",
    "split_range",
    "transfer_filter",
]
