# UPS Watch
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Single-assignment result cell for cancellable network operations."""

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class ResultCell:
    """One-shot outcome shared by every callback path of an operation.

    Connect, receive, connection-lost and timeout handlers all report
    through :meth:`try_complete`; the first writer wins and every later
    write is a no-op that returns False.
    """

    def __init__(self, name: str = "operation",
                 loop: asyncio.AbstractEventLoop | None = None):
        self.name = name
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()
        self._completed = False
        self.rejected_writes = 0

    @property
    def completed(self) -> bool:
        return self._completed

    def try_complete(self, result: Any = None,
                     error: BaseException | None = None) -> bool:
        """Deliver a result or an error. Returns True only for the winner."""
        if self._completed or self._future.done():
            self.rejected_writes += 1
            logger.debug("%s: dropping late %s", self.name,
                         "error" if error is not None else "result")
            return False
        self._completed = True
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(result)
        return True

    def try_fail(self, error: BaseException) -> bool:
        return self.try_complete(error=error)

    async def wait(self) -> Any:
        """Wait for the single outcome; raises the error if one won."""
        return await self._future
