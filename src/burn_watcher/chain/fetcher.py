"""Bounded-window ``Transfer`` log fetching.

Providers cap how many blocks one ``eth_getLogs`` call may span. The
fetcher walks an inclusive block range in fixed windows and halves a
window whenever the provider reports it as too large.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from burn_watcher.chain.client import ChainClient, RangeTooLargeError
from burn_watcher.chain.transfers import TransferDecodeError, decode_transfer_log, transfer_filter
from burn_watcher.models import RawTransferEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_RANGE_BLOCKS = 10


def split_range(from_block: int, to_block: int, max_range_blocks: int) -> Iterator[tuple[int, int]]:
    """Yield inclusive ``(start, end)`` windows covering ``[from_block, to_block]``.

    Example:
        >>> list(split_range(100, 135, 10))
        [(100, 109), (110, 119), (120, 129), (130, 135)]
    """
    if max_range_blocks < 1:
        raise ValueError("max_range_blocks must be >= 1")
    start = from_block
    while start <= to_block:
        end = min(start + max_range_blocks - 1, to_block)
        yield start, end
        start = end + 1


class RangeFetcher:
    """Fetch Transfer events of one token in bounded windows.

    Only the ``from``/``to`` constraints given at construction are pushed to
    the provider as topic filters; results are returned ordered by
    ``(block_number, log_index)``.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        max_range_blocks: int = DEFAULT_MAX_RANGE_BLOCKS,
        from_address: str | None = None,
        to_address: str | None = None,
    ) -> None:
        if max_range_blocks < 1:
            raise ValueError("max_range_blocks must be >= 1")
        self._client = client
        self._max_range_blocks = max_range_blocks
        self._from_address = from_address
        self._to_address = to_address

    @property
    def max_range_blocks(self) -> int:
        return self._max_range_blocks

    async def fetch(self, token_address: str, from_block: int, to_block: int) -> list[RawTransferEvent]:
        """Return all matching Transfer events in ``[from_block, to_block]``.

        Raises:
            ValueError: If ``from_block > to_block``.
            RangeTooLargeError: If even a single-block window is rejected.
            RPCError: If a window still fails after retries.
        """
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} > to_block {to_block}")

        events: list[RawTransferEvent] = []
        for start, end in split_range(from_block, to_block, self._max_range_blocks):
            events.extend(await self._fetch_window(token_address, start, end))

        events.sort(key=lambda e: (e.block_number or 0, e.log_index))
        return events

    async def _fetch_window(self, token_address: str, start: int, end: int) -> list[RawTransferEvent]:
        params = transfer_filter(
            token_address,
            from_address=self._from_address,
            to_address=self._to_address,
        )
        params["fromBlock"] = start
        params["toBlock"] = end

        try:
            logs = await self._client.get_logs(params)
        except RangeTooLargeError:
            if start == end:
                raise
            mid = start + (end - start) // 2
            logger.info("Range %d-%d too large, splitting at %d", start, end, mid)
            return [
                *await self._fetch_window(token_address, start, mid),
                *await self._fetch_window(token_address, mid + 1, end),
            ]

        events: list[RawTransferEvent] = []
        for log in logs:
            if log.get("removed"):
                continue
            try:
                events.append(decode_transfer_log(log))
            except TransferDecodeError as e:
                logger.debug("Skipping undecodable log in %d-%d: %s", start, end, e)
        return events
