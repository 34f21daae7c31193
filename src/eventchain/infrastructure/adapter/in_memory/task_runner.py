import asyncio
import concurrent.futures
import inspect
import threading
from typing import Any

from eventchain.application.port import TaskRunner
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import ActionResult


class InMemoryTaskRunner(TaskRunner):
    def run(self, handler: ActionHandler, payload: dict[str, Any], timeout: float | None = None) -> ActionResult:
        """
        Execute a handler with its resolved payload.

        The handler runs in the calling thread unless a timeout is set or the
        calling thread is already running an event loop.

        On timeout the handler's cancel event is set and TimeoutError is raised;
        the worker thread is abandoned rather than joined.

        :param handler: The handler instance to execute
        :type handler: ActionHandler
        :param payload: The resolved input payload
        :type payload: dict[str, Any]
        :param timeout: Seconds to wait for the handler; None waits indefinitely
        :type timeout: float | None
        :returns: The handler's result
        :rtype: ActionResult
        :raises TimeoutError: If the handler does not finish in time
        """
        cancel = threading.Event()
        # asyncio.run cannot nest inside a running loop
        if timeout is None and not _in_event_loop():
            return self._execute(handler, payload, cancel)

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._execute, handler, payload, cancel)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            cancel.set()
            raise TimeoutError(f"{type(handler).__name__} did not finish within {timeout}s") from None
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _execute(handler: ActionHandler, payload: dict[str, Any], cancel: threading.Event) -> ActionResult:
        result = handler.execute(payload, cancel)
        if inspect.iscoroutine(result):
            result = asyncio.run(result)
        return result


def _in_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
