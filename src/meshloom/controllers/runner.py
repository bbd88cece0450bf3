"""Watch-and-dispatch loop shared by every controller."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from meshloom.core.errors import ProtocolError
from meshloom.core.interfaces import ObjectStore
from meshloom.core.kinds import ResourceKind
from meshloom.core.messages import FederationMessage, decode_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Request:
    """Key of one object to reconcile, tagged with the watch it came from."""

    source: str
    namespace: str | None
    name: str
    message: FederationMessage | None = None

    def __str__(self) -> str:
        key = f"{self.namespace}/{self.name}" if self.namespace else self.name
        return f"{self.source}:{key}"


@dataclass
class WatchSource:
    """One stream of change events feeding a controller."""

    tag: str
    store: ObjectStore
    kind: ResourceKind
    namespace: str | None = None
    predicate: Callable[[dict[str, Any]], bool] | None = None
    decode_messages: bool = False

    def to_request(self, obj: dict[str, Any]) -> Request | None:
        """Turn an observed object into a request, or None to ignore it."""
        if self.predicate is not None and not self.predicate(obj):
            return None
        metadata = obj.get("metadata", {})
        name = metadata.get("name", "")
        message = None
        if self.decode_messages:
            try:
                message = decode_message(name)
            except ProtocolError as e:
                logger.warning("Ignoring %s %s: %s", self.kind.kind, name, e)
                return None
            if message is None:
                return None
        return Request(source=self.tag, namespace=metadata.get("namespace"), name=name, message=message)


class Controller(ABC):
    """A level-triggered reconciler."""

    name = "controller"

    @abstractmethod
    def sources(self) -> list[WatchSource]:
        """Watches whose events enqueue requests for this controller."""
        pass

    @abstractmethod
    async def reconcile(self, request: Request) -> None:
        """Drive the object named by the request towards its desired state."""
        pass


class WorkQueue:
    """
    De-duplicating queue that never hands out a request already in progress.

    A request added while it is being processed is remembered and re-queued
    once processing finishes.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Request] = asyncio.Queue()
        self._dirty: set[Request] = set()
        self._processing: set[Request] = set()

    def add(self, request: Request) -> None:
        if request in self._dirty:
            return
        self._dirty.add(request)
        if request not in self._processing:
            self._queue.put_nowait(request)

    def add_after(self, request: Request, delay: float) -> None:
        asyncio.get_running_loop().call_later(delay, self.add, request)

    async def get(self) -> Request:
        request = await self._queue.get()
        self._dirty.discard(request)
        self._processing.add(request)
        return request

    def done(self, request: Request) -> None:
        self._processing.discard(request)
        if request in self._dirty:
            self._queue.put_nowait(request)

    def __len__(self) -> int:
        return self._queue.qsize()


class ControllerRunner:
    """Run controllers until cancelled."""

    def __init__(
        self,
        controllers: list[Controller],
        workers: int = 2,
        base_backoff: float = 1.0,
        max_backoff: float = 300.0,
        rewatch_delay: float = 5.0,
    ):
        self.controllers = controllers
        self.workers = workers
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.rewatch_delay = rewatch_delay
        self.queues: dict[str, WorkQueue] = {}
        self._failures: dict[Request, int] = {}

    async def run(self) -> None:
        tasks = []
        for controller in self.controllers:
            queue = self.queues.setdefault(controller.name, WorkQueue())
            for source in controller.sources():
                tasks.append(asyncio.create_task(self._watch(controller, source, queue)))
            for _ in range(self.workers):
                tasks.append(asyncio.create_task(self._work(controller, queue)))

        logger.info("Started %d controllers", len(self.controllers))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()

    async def _watch(self, controller: Controller, source: WatchSource, queue: WorkQueue) -> None:
        while True:
            try:
                async for event in source.store.watch(source.kind, source.namespace):
                    request = source.to_request(event.object)
                    if request is not None:
                        queue.add(request)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Watch %s for %s failed: %s", source.tag, controller.name, e)
            await asyncio.sleep(self.rewatch_delay)

    async def _work(self, controller: Controller, queue: WorkQueue) -> None:
        while True:
            request = await queue.get()
            try:
                await self.process(controller, request, queue)
            finally:
                queue.done(request)

    async def process(self, controller: Controller, request: Request, queue: WorkQueue) -> bool:
        """Reconcile one request, scheduling a retry on failure."""
        try:
            await controller.reconcile(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failures = self._failures.get(request, 0) + 1
            self._failures[request] = failures
            delay = min(self.base_backoff * 2 ** (failures - 1), self.max_backoff)
            logger.error("%s failed to reconcile %s (retry in %.0fs): %s", controller.name, request, delay, e)
            queue.add_after(request, delay)
            return False

        self._failures.pop(request, None)
        return True
