# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Tests for the single-assignment ResultCell."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "monitor"))

from upswatch.completion import ResultCell


class TestResultCell:
    @pytest.mark.asyncio
    async def test_first_result_wins(self):
        cell = ResultCell("t")
        assert cell.try_complete("first") is True
        assert cell.try_complete("second") is False
        assert cell.try_fail(RuntimeError("late")) is False
        assert await cell.wait() == "first"
        assert cell.rejected_writes == 2
        assert cell.completed

    @pytest.mark.asyncio
    async def test_first_error_wins(self):
        cell = ResultCell("t")
        assert cell.try_fail(ValueError("boom")) is True
        assert cell.try_complete("ok") is False
        with pytest.raises(ValueError):
            await cell.wait()

    @pytest.mark.asyncio
    async def test_concurrent_writers(self):
        cell = ResultCell("t")
        loop = asyncio.get_running_loop()
        for i in range(20):
            loop.call_soon(cell.try_complete, i)
        assert await cell.wait() == 0
        await asyncio.sleep(0)
        assert cell.rejected_writes == 19

    @pytest.mark.asyncio
    async def test_cancelled_waiter_rejects_writes(self):
        cell = ResultCell("t")
        waiter = asyncio.ensure_future(cell.wait())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert cell.try_complete("late") is False
