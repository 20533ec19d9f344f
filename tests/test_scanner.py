"""Tests for the checkpointed scanner."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

import pytest

from burn_watcher.chain.client import RPCError
from burn_watcher.models import WatchedPair
from burn_watcher.scanner import CursorScanner, ScannerError, ScannerState
from burn_watcher.storage.database import DatabaseManager
from burn_watcher.storage.repos import BurnEventRepository, CheckpointRepository

from conftest import BLOCK_TIMESTAMP, OTHER, RECIPIENT, TOKEN


def _serve(logs: list[dict[str, Any]]):
    async def get_logs(params: dict[str, Any]) -> list[dict[str, Any]]:
        return [log for log in logs if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]]

    return get_logs


async def _checkpoint(db: DatabaseManager) -> int | None:
    async with db.get_async_session() as session:
        return await CheckpointRepository(session).get(TOKEN)


async def _burns(db: DatabaseManager) -> list:
    async with db.get_async_session() as session:
        return await BurnEventRepository(session).list_for_token(TOKEN)


class TestResolveOrigin:
    @pytest.mark.asyncio
    async def test_checkpoint_wins(self, db, mock_client, pair: WatchedPair) -> None:
        async with db.get_async_session() as session:
            await CheckpointRepository(session).advance(TOKEN, 50)

        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=10)
        assert await scanner.resolve_origin() == 50

    @pytest.mark.asyncio
    async def test_start_block_without_checkpoint(self, db, mock_client, pair: WatchedPair) -> None:
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=10)
        assert await scanner.resolve_origin() == 9

    @pytest.mark.asyncio
    async def test_head_without_checkpoint_or_start(self, db, mock_client, pair: WatchedPair) -> None:
        mock_client.get_head_height.return_value = 100
        scanner = CursorScanner(client=mock_client, db=db, pair=pair)
        assert await scanner.resolve_origin() == 99


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_records_burns_and_advances_checkpoint(self, db, mock_client, pair, make_log) -> None:
        mock_client.get_head_height.return_value = 100
        mock_client.get_logs.side_effect = _serve(
            [
                make_log(block=93, log_index=2, amount=5 * 10**18),
                make_log(block=97, log_index=0, amount=10**18),
            ]
        )
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=91)

        assert await scanner.run_once() == 100

        assert await _checkpoint(db) == 100
        burns = await _burns(db)
        assert [(b.block_number, b.log_index) for b in burns] == [(97, 0), (93, 2)]
        assert burns[1].amount_raw == 5 * 10**18
        assert burns[1].origin == "scanner"
        assert burns[0].timestamp.replace(tzinfo=UTC) == datetime.fromtimestamp(BLOCK_TIMESTAMP, tz=UTC)
        assert scanner.state == ScannerState.STEADY

    @pytest.mark.asyncio
    async def test_at_head_is_noop(self, db, mock_client, pair) -> None:
        async with db.get_async_session() as session:
            await CheckpointRepository(session).advance(TOKEN, 100)
        mock_client.get_head_height.return_value = 100
        scanner = CursorScanner(client=mock_client, db=db, pair=pair)

        assert await scanner.run_once() is None
        mock_client.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ignores_transfers_to_other_recipients(self, db, mock_client, pair, make_log) -> None:
        mock_client.get_head_height.return_value = 100
        mock_client.get_logs.side_effect = _serve(
            [
                make_log(block=95, to_address=OTHER),
                make_log(block=96, from_address=OTHER),
                make_log(block=97, log_index=1),
            ]
        )
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=91)

        await scanner.run_once()

        burns = await _burns(db)
        assert len(burns) == 1
        assert burns[0].from_address == RECIPIENT
        assert scanner.stats.events_seen == 3

    @pytest.mark.asyncio
    async def test_replay_inserts_nothing_new(self, db, mock_client, pair, make_log) -> None:
        mock_client.get_head_height.return_value = 100
        mock_client.get_logs.side_effect = _serve([make_log(block=95), make_log(block=99, log_index=4)])

        first = CursorScanner(client=mock_client, db=db, pair=pair, start_block=91)
        await first.run_once()

        # Simulates a crash after the batch but before the cursor was persisted.
        replay = CursorScanner(client=mock_client, db=db, pair=pair)
        replay._cursor = 90
        await replay.run_once()

        assert replay.stats.events_recorded == 0
        assert replay.stats.duplicates_absorbed == 2
        assert len(await _burns(db)) == 2
        assert await _checkpoint(db) == 100

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_checkpoint(self, db, mock_client, pair) -> None:
        async with db.get_async_session() as session:
            await CheckpointRepository(session).advance(TOKEN, 80)
        mock_client.get_head_height.return_value = 100
        mock_client.get_logs.side_effect = RPCError("down")
        scanner = CursorScanner(client=mock_client, db=db, pair=pair)

        with pytest.raises(RPCError):
            await scanner.run_once()

        assert await _checkpoint(db) == 80
        assert scanner.cursor == 80


class TestRun:
    @pytest.mark.asyncio
    async def test_catches_up_in_batches(self, db, mock_client, pair, make_log) -> None:
        mock_client.get_head_height.return_value = 25
        mock_client.get_logs.side_effect = _serve([make_log(block=3), make_log(block=24)])
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=1, batch_blocks=10)

        stats = await scanner.run(until_caught_up=True)

        assert stats.batches_processed == 3
        assert stats.events_recorded == 2
        assert stats.last_block == 25
        assert await _checkpoint(db) == 25
        assert scanner.state == ScannerState.STEADY

    @pytest.mark.asyncio
    async def test_one_shot_failure_raises(self, db, mock_client, pair) -> None:
        mock_client.get_head_height.return_value = 25
        mock_client.get_logs.side_effect = RPCError("down")
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=1)

        with pytest.raises(ScannerError):
            await scanner.run(until_caught_up=True)
        assert scanner.stats.batches_failed == 1
        assert await _checkpoint(db) is None

    @pytest.mark.asyncio
    async def test_continuous_mode_retries_after_failure(self, db, mock_client, pair, make_log) -> None:
        mock_client.get_head_height.return_value = 20
        serve = _serve([make_log(block=15)])
        calls = {"n": 0}

        async def flaky(params: dict[str, Any]) -> list[dict[str, Any]]:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RPCError("down")
            return await serve(params)

        mock_client.get_logs.side_effect = flaky
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=11, poll_interval_seconds=0.01)

        task = asyncio.create_task(scanner.run())
        for _ in range(500):
            if scanner.stats.batches_processed:
                break
            await asyncio.sleep(0.01)
        await scanner.stop()
        stats = await asyncio.wait_for(task, timeout=5)

        assert stats.batches_failed == 1
        assert stats.batches_processed == 1
        assert await _checkpoint(db) == 20
        assert len(await _burns(db)) == 1

    @pytest.mark.asyncio
    async def test_wake_cuts_sleep_short(self, db, mock_client, pair) -> None:
        mock_client.get_head_height.return_value = 10
        scanner = CursorScanner(client=mock_client, db=db, pair=pair, start_block=11, poll_interval_seconds=60)

        task = asyncio.create_task(scanner.run())
        for _ in range(500):
            if mock_client.get_head_height.await_count >= 1:
                break
            await asyncio.sleep(0.01)
        before = mock_client.get_head_height.await_count
        scanner.wake()
        for _ in range(500):
            if mock_client.get_head_height.await_count > before:
                break
            await asyncio.sleep(0.01)
        await scanner.stop()
        await asyncio.wait_for(task, timeout=5)

        assert mock_client.get_head_height.await_count > before
