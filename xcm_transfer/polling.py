"""
Periodic Polling

Fixed-interval refresh loop bound to the active account: restarted when the
account changes, cancelled when no account is active.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from .balance_aggregator import BalanceAggregator, BalanceReport
from .errors import XcmTransferError

T = TypeVar('T')


class PeriodicRefresher:
    """
    Runs `fetch(account)` immediately and then every `interval_seconds`

    Errors raised by `fetch` are logged and passed to `on_error`; they never
    stop the loop.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[str], Awaitable[T]],
        interval_seconds: float = 30.0,
        on_result: Optional[Callable[[T], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None
    ):
        self.name = name
        self._fetch = fetch
        self.interval_seconds = interval_seconds
        self._on_result = on_result
        self._on_error = on_error

        self.account: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_once(self, account: str):
        try:
            result = await self._fetch(account)
        except (XcmTransferError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"{self.name} refresh failed: {e}")
            if self._on_error:
                self._on_error(e)
            return None

        if self._on_result:
            self._on_result(result)
        return result

    async def _loop(self, account: str):
        while True:
            await self._run_once(account)
            await asyncio.sleep(self.interval_seconds)

    def set_account(self, account: Optional[str]):
        """
        Switch the polled account

        Must be called from within the running event loop.
        """
        if account == self.account and (account is None or self.is_running):
            return

        self._cancel()
        self.account = account

        if account is None:
            logger.debug(f"{self.name} polling stopped (no active account)")
            return

        self._task = asyncio.get_running_loop().create_task(self._loop(account))
        logger.debug(f"{self.name} polling every {self.interval_seconds}s for {account[:10]}...")

    async def refresh_now(self):
        """Out-of-cycle refresh for the active account"""
        if self.account is None:
            return None
        return await self._run_once(self.account)

    def _cancel(self):
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def stop(self):
        task = self._task
        self._cancel()
        self.account = None
        if task:
            try:
                await task
            except asyncio.CancelledError:
                pass


class BalancePoller(PeriodicRefresher):
    """Balance polling over all chains"""

    def __init__(
        self,
        aggregator: BalanceAggregator,
        interval_seconds: float = 30.0,
        on_report: Optional[Callable[[BalanceReport], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None
    ):
        super().__init__(
            'Balance',
            aggregator.refresh_all,
            interval_seconds=interval_seconds,
            on_result=on_report,
            on_error=on_error
        )
        self.aggregator = aggregator
