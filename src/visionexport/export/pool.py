"""Bounded, pull-based parallel runner used by every fetch phase."""

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Set

from loguru import logger
from tqdm import tqdm

Unit = Callable[[], Any]
Producer = Callable[[], Optional[Unit]]


@dataclass
class PoolResult:
    """Bookkeeping of a single pool run."""

    completed: int = 0
    failed: int = 0
    errors: List[BaseException] = field(default_factory=list)


class ConcurrencyPool:
    """Run units of work pulled from a producer with at most `concurrency`
    of them in flight.

    The producer is called from the calling thread until it returns None.
    A unit that raises is logged and counted, it never aborts its siblings
    or the pool. With `raise_errors`, no new units are pulled after the first
    failure and that failure is re-raised once the in-flight units finish.
    """

    def __init__(
        self,
        concurrency: int,
        name: str = "pool",
        raise_errors: bool = False,
        show_progress: bool = False,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.concurrency = concurrency
        self.name = name
        self.raise_errors = raise_errors
        self.show_progress = show_progress

    def run(self, producer: Producer, total: Optional[int] = None) -> PoolResult:
        result = PoolResult()
        in_flight: Set[Future] = set()
        exhausted = False
        with tqdm(
            total=total, desc=self.name, disable=not self.show_progress
        ) as progress, ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=self.name
        ) as executor:
            while True:
                while not exhausted and len(in_flight) < self.concurrency:
                    unit = producer()
                    if unit is None:
                        exhausted = True
                        break
                    in_flight.add(executor.submit(unit))
                if not in_flight:
                    break
                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    error = future.exception()
                    if error is None:
                        result.completed += 1
                    else:
                        result.failed += 1
                        result.errors.append(error)
                        logger.opt(exception=error).error(
                            f"[{self.name}] unit of work failed: {error}"
                        )
                        if self.raise_errors:
                            exhausted = True
                    progress.update(1)

        if self.raise_errors and result.errors:
            raise result.errors[0]
        return result

    def run_queue(self, items: Sequence, worker: Callable[[Any], Any]) -> PoolResult:
        """Run `worker` on every item of `items`, in order of the sequence."""
        queue = list(items)
        queue.reverse()

        def producer() -> Optional[Unit]:
            if not queue:
                return None
            item = queue.pop()
            return lambda: worker(item)

        return self.run(producer, total=len(items))

    def run_id_ranges(
        self,
        method: Callable[[int, int], Any],
        start_id: int,
        max_id: int,
        batch_size: int,
    ) -> PoolResult:
        """Call `method(start, end)` for consecutive ID ranges up to `max_id`."""
        starts = list(range(start_id, max_id, batch_size))
        return self.run_queue(starts, lambda start: method(start, start + batch_size))
