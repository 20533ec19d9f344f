"""ERC-20 ``Transfer`` log filters and decoding.

Logs arrive either from ``eth_getLogs``/receipts over HTTP (``HexBytes``
fields, web3 ``AttributeDict``) or from ``eth_subscribe`` notifications
(plain hex strings, hex-encoded integers). Both shapes decode here.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from web3 import Web3

from burn_watcher.models import RawTransferEvent

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)")).lower()

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]


class TransferDecodeError(ValueError):
    """Raised when a log is not a decodable ERC-20 Transfer."""


def to_hex(value: Any) -> str:
    """Render bytes-like or hex-string values as a lowercase ``0x`` string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


def to_int(value: Any) -> int:
    """Decode an integer field that may be an int or a hex quantity."""
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return int.from_bytes(bytes(value), "big")
    return int(str(value), 16)


def pad_topic_address(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + address.lower().removeprefix("0x").zfill(64)


def topic_to_address(topic: Any) -> str:
    hexed = to_hex(topic)[2:]
    return ("0x" + hexed[-40:]).lower()


def transfer_filter(
    token_address: str,
    *,
    from_address: str | None = None,
    to_address: str | None = None,
) -> dict[str, Any]:
    """Build an address+topics log filter for Transfer events.

    ``None`` leaves that indexed argument unconstrained.
    """
    return {
        "address": Web3.to_checksum_address(token_address),
        "topics": [
            TRANSFER_TOPIC,
            pad_topic_address(from_address) if from_address else None,
            pad_topic_address(to_address) if to_address else None,
        ],
    }


def is_transfer_log(log: Mapping[str, Any], token_address: str) -> bool:
    topics = log.get("topics") or []
    if len(topics) < 3:
        return False
    if to_hex(topics[0]) != TRANSFER_TOPIC:
        return False
    return str(log.get("address", "")).lower() == token_address.lower()


def decode_transfer_log(log: Mapping[str, Any]) -> RawTransferEvent:
    """Decode a Transfer log into a :class:`RawTransferEvent`.

    Raises:
        TransferDecodeError: If the log is not a standard Transfer.
    """
    topics = log.get("topics") or []
    if len(topics) < 3 or to_hex(topics[0]) != TRANSFER_TOPIC:
        raise TransferDecodeError("log is not an ERC-20 Transfer")

    data = to_hex(log.get("data") or "0x")
    if len(data) <= 2:
        raise TransferDecodeError("Transfer log has no amount data")

    block_number = log.get("blockNumber")
    log_index = log.get("logIndex")
    return RawTransferEvent(
        token_address=str(log.get("address", "")).lower(),
        from_address=topic_to_address(topics[1]),
        to_address=topic_to_address(topics[2]),
        amount_raw=int(data, 16),
        tx_hash=to_hex(log["transactionHash"]),
        log_index=to_int(log_index) if log_index is not None else 0,
        block_number=to_int(block_number) if block_number is not None else None,
    )
