from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Tuple


logger = logging.getLogger(__name__)


Handler = Callable[..., Any]


class DocumentContext:
    """Serialized execution context for everything that touches the document.

    Network tasks never mutate the document themselves; they post work here
    and one worker runs it in arrival order. Handlers must not wait on the
    network; sends are fire-and-forget.
    """

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[Tuple[Handler, tuple]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopped = True
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        # pending work for a closed session is dropped
        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()

    def post(self, handler: Handler, *args: Any) -> None:
        if self._stopped:
            return
        self._inbox.put_nowait((handler, args))

    async def drain(self) -> None:
        """Wait until everything posted so far has run."""
        await self._inbox.join()

    async def _run(self) -> None:
        while not self._stopped:
            handler, args = await self._inbox.get()
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("document context handler %s failed", getattr(handler, "__name__", handler))
            finally:
                self._inbox.task_done()
