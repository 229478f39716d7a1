"""Shared pieces of the org/space/instance traversal."""

import asyncio
import re
from typing import Awaitable, Callable, Iterable, List, Sequence, TypeVar

from loguru import logger


T = TypeVar('T')


class OrgFilter:
    """Include/exclude regular expressions evaluated against org names."""

    def __init__(self, include: Sequence[str] = (), exclude: Sequence[str] = ()):
        """Initialize org filter.

        Raises:
            re.error: If a pattern does not compile
        """
        self.include = [re.compile(p) for p in include]
        self.exclude = [re.compile(p) for p in exclude]

    def should_process(self, org: str) -> bool:
        """Return True when an org passes both lists.

        An empty include list admits every org; any exclude match rejects it.
        """
        if self.include and not any(p.search(org) for p in self.include):
            logger.debug(f'Org {org} does not match the included orgs')
            return False
        if any(p.search(org) for p in self.exclude):
            logger.debug(f'Org {org} matches the excluded orgs')
            return False
        return True


async def run_bounded(
    items: Iterable[T], worker: Callable[[T], Awaitable[None]], max_workers: int
) -> None:
    """Run a worker per item with at most max_workers in flight.

    Items are started in order. A cancelled run does not start further items
    and cancels the ones in flight.
    """
    semaphore = asyncio.Semaphore(max_workers)

    async def run(item: T) -> None:
        async with semaphore:
            await worker(item)

    tasks: List[asyncio.Task] = [asyncio.ensure_future(run(item)) for item in items]
    if not tasks:
        return
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
