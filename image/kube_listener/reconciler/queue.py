# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import CancelledError, Queue, gather, get_running_loop
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Generic, Hashable, TypeVar

import kopf

from kube_listener.shared.config import RECONCILE_RETRY_DELAY, RECONCILE_WORKERS
from kube_listener.shared.util import error_full_message, log

# ---------------------------------------------------------------------------- #

K = TypeVar("K", bound=Hashable)


class ReconcileQueue(Generic[K]):
    """
    Keyed work queue drained by a bounded pool of workers.

    A key is never reconciled concurrently with itself. Enqueuing a key that is
    already waiting has no effect, and enqueuing a key that is being reconciled
    causes it to be reconciled once more afterwards.

    Failed reconciliations are logged and retried after a fixed delay, except
    for `kopf.PermanentError`, which is only logged, and `kopf.TemporaryError`,
    which is retried after its own delay.
    """

    def __init__(
        self,
        reconcile: Callable[[K], Awaitable[None]],
        *,
        workers: int = RECONCILE_WORKERS,
        retry_delay: timedelta = RECONCILE_RETRY_DELAY,
    ) -> None:

        assert workers > 0

        self.__reconcile = reconcile
        self.__workers = workers
        self.__retry_delay = retry_delay

        self.__queue: Queue[K] = Queue()

        self.__waiting: set[K] = set()  # in the queue
        self.__active: set[K] = set()  # being reconciled
        self.__dirty: set[K] = set()  # enqueued while being reconciled

    @property
    def workers(self) -> int:
        return self.__workers

    def enqueue(self, key: K) -> None:

        if key in self.__waiting:
            pass
        elif key in self.__active:
            self.__dirty.add(key)
        else:
            self.__waiting.add(key)
            self.__queue.put_nowait(key)

    def enqueue_after(self, key: K, delay: timedelta) -> None:
        get_running_loop().call_later(
            delay.total_seconds(), self.enqueue, key
        )

    async def join(self) -> None:
        """Wait until the queue is empty and no key is being reconciled.
        Retries that have not been enqueued yet are not waited for."""
        await self.__queue.join()

    async def run(self) -> None:
        await gather(*(self.__work() for _ in range(self.__workers)))

    async def __work(self) -> None:

        while True:

            key = await self.__queue.get()

            self.__waiting.discard(key)
            self.__active.add(key)

            try:
                await self.__reconcile(key)

            except CancelledError:
                raise

            except kopf.PermanentError as e:
                log(f"Failed to reconcile {key}: {error_full_message(e)}")

            except kopf.TemporaryError as e:
                log(
                    f"Failed to reconcile {key}, retrying in {e.delay}s:"
                    f" {error_full_message(e)}"
                )
                self.enqueue_after(key, timedelta(seconds=e.delay or 0))

            except Exception as e:
                log(
                    f"Failed to reconcile {key}, retrying in"
                    f" {self.__retry_delay.total_seconds():g}s:"
                    f" {error_full_message(e)}"
                )
                self.enqueue_after(key, self.__retry_delay)

            finally:

                self.__active.discard(key)

                if key in self.__dirty:
                    self.__dirty.discard(key)
                    self.enqueue(key)

                self.__queue.task_done()


# ---------------------------------------------------------------------------- #
