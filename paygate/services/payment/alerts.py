"""Fire-and-forget delivery of operational alerts."""

import asyncio
import logging

logger = logging.getLogger(__name__)


class AlertSink:
    """Schedules ``sender(text)`` in the background and never raises."""

    def __init__(self, sender=None):
        self.sender = sender
        self._tasks = set()

    def send(self, text: str) -> None:
        if self.sender is None:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.sender(text))
        except RuntimeError:
            logger.warning("No running loop, alert dropped: %s", text, extra={"category": "ALERTS"})
            return
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Alert delivery failed: %s", task.exception(), extra={"category": "ALERTS"})

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
