"""An owned event loop for issuing remote operations from synchronous code."""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Optional

logger = logging.getLogger(__name__)


class AgentRuntime:
    """
    Background event loop running on a daemon thread.

    Synchronous callers create one, hand it to whatever issues remote
    operations, and stop it when done. Nothing here is process-global:
    two runtimes are two independent loops.
    """

    def __init__(self, name: str = "slarti-runtime"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "AgentRuntime":
        if self.is_running:
            return self

        self._started.clear()

        def run():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._started.set()
            try:
                self._loop.run_forever()
            finally:
                pending = asyncio.all_tasks(self._loop)
                for task in pending:
                    task.cancel()
                if pending:
                    self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
                self._loop.run_until_complete(self._loop.shutdown_asyncgens())
                self._loop.close()

        self._thread = threading.Thread(target=run, name=self.name, daemon=True)
        self._thread.start()
        self._started.wait()
        logger.debug(f"Runtime {self.name} started")
        return self

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop; tasks still pending are cancelled."""
        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Runtime {self.name} did not stop within {timeout}s")
            self._thread = None
        self._loop = None

    def submit(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        """Schedule ``coro`` on the runtime loop and return a thread-safe future."""
        if not self.is_running or self._loop is None:
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError(f"Runtime {self.name} is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run ``coro`` on the runtime loop and block for its result."""
        future = self.submit(coro)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
