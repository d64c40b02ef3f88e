import asyncio
from typing import AsyncIterator, Iterable, Iterator, TypeVar

T = TypeVar("T")

_DONE = object()


def iter_as_async(it: Iterable[T]) -> AsyncIterator[T]:
    """Drive a blocking iterator from worker threads, one item per hop.

    Closing the returned generator (or cancelling its consumer) closes the
    source iterator, which releases the underlying HTTP stream.
    """

    async def gen() -> AsyncIterator[T]:
        source: Iterator[T] = iter(it)
        try:
            while True:
                item = await asyncio.to_thread(next, source, _DONE)
                if item is _DONE:
                    return
                yield item  # type: ignore[misc]
        finally:
            close = getattr(source, "close", None)
            # A generator still inside next() on a worker thread cannot be closed yet.
            if close is not None and not getattr(source, "gi_running", False):
                close()

    return gen()
