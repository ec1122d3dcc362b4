import asyncio
from typing import Optional, Set

import aiohttp

from utils.logger import TradingLogger


class Notifier:
    """Alert sink. ``send`` may raise; callers go through ``notify`` which never does."""

    def __init__(self, logger: Optional[TradingLogger] = None):
        self.logger = logger or TradingLogger("notifier")
        self._pending: Set[asyncio.Task] = set()

    async def send(self, message: str) -> None:
        raise NotImplementedError

    def notify(self, message: str) -> None:
        """Schedule delivery in the background; failures are logged and dropped"""
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(message))
        except RuntimeError:
            self.logger.warning(f"No running loop, notification dropped: {message}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, message: str) -> None:
        try:
            await self.send(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"Notification failed: {str(e)}")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait briefly for in-flight notifications during shutdown"""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

    async def close(self) -> None:
        await self.drain()


class LogNotifier(Notifier):
    async def send(self, message: str) -> None:
        self.logger.info(f"[notify] {message}")


class TelegramNotifier(Notifier):
    def __init__(self, bot_token: str, chat_id: str, logger: Optional[TradingLogger] = None, timeout: float = 10.0):
        super().__init__(logger)
        self.url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        self.chat_id = chat_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def send(self, message: str) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        payload = {'chat_id': self.chat_id, 'text': message, 'disable_web_page_preview': True}
        async with self.session.post(self.url, json=payload) as response:
            if response.status != 200:
                raise RuntimeError(f"Telegram returned HTTP {response.status}: {await response.text()}")

    async def close(self) -> None:
        await super().close()
        if self.session and not self.session.closed:
            await self.session.close()


def create_notifier(bot_token: Optional[str], chat_id: Optional[str], logger: Optional[TradingLogger] = None) -> Notifier:
    if bot_token and chat_id:
        return TelegramNotifier(bot_token, chat_id, logger)
    return LogNotifier(logger)
