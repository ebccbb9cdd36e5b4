"""
Shutdown Coordinator

Cancellation signal plus completion barrier for a client's background
tasks, and an optional hook that closes clients on SIGTERM/SIGINT.
"""
import signal
import asyncio
from typing import Coroutine, List, Optional, Set
from zkregistry.logging import get_logger

logger = get_logger("shutdown-coordinator")


class ShutdownCoordinator:
    """
    Single-fire, broadcast cancellation signal with a task barrier.

    stop() fires the signal at most once. wait() returns once every task
    started through spawn() has finished.
    """

    def __init__(self, name: str):
        """
        Args:
            name: Owner name for logging
        """
        self.name = name
        self._exit = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Start a background task tracked by the barrier"""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background task failed",
                owner=self.name,
                task=task.get_name(),
                exc_info=task.exception()
            )

    def stop(self) -> bool:
        """
        Fire the cancellation signal.

        Returns:
            True if it had already fired, False if this call fired it
        """
        if self._exit.is_set():
            return True

        self._exit.set()
        logger.debug("Cancellation signalled", owner=self.name)
        return False

    async def wait(self):
        """
        Block until every tracked task has exited.

        Cancelling the waiter leaves the tasks running.
        """
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        if pending:
            await asyncio.wait(pending)

    @property
    def done(self) -> asyncio.Event:
        return self._exit

    @property
    def stopped(self) -> bool:
        return self._exit.is_set()

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)


def close_on_signals(
    *clients,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    signals: tuple = (signal.SIGTERM, signal.SIGINT)
) -> List[signal.Signals]:
    """
    Close registry clients when the process is asked to stop.

    Args:
        clients: Objects with an async close()
        loop: Loop to install handlers on (defaults to the running loop)
        signals: Signals to handle

    Returns:
        The signals that were installed
    """
    loop = loop or asyncio.get_running_loop()

    def handler(sig: signal.Signals):
        logger.info(
            "Received shutdown signal",
            signal=signal.Signals(sig).name,
            clients=len(clients)
        )
        for client in clients:
            asyncio.ensure_future(client.close(), loop=loop)

    installed = []
    for sig in signals:
        loop.add_signal_handler(sig, handler, sig)
        installed.append(sig)

    logger.info("Signal handlers registered", signals=[signal.Signals(s).name for s in installed])
    return installed
