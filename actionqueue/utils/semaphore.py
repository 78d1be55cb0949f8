import asyncio
from collections import deque


class Semaphore:
    """Counting semaphore with strict FIFO hand-off.

    ``release`` passes the permit straight to the oldest waiter instead of
    returning it to the pool, so a newcomer can never overtake a queued
    caller. There is no timeout: a caller that never releases starves
    everyone behind it.
    """

    def __init__(self, permits: int):
        if permits < 1:
            raise ValueError("permits must be >= 1")
        self._available = permits
        self._waiters = deque()

    @property
    def available(self) -> int:
        return self._available

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self._available > 0:
            self._available -= 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled():
                # Permit was handed over just before cancellation; pass it on
                self.release()
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._available += 1

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.release()
