"""Per-run ledger of service instance migration outcomes."""

import threading
from typing import Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table
from rich import box


SUCCESSFUL = 'successful'


class ServiceResult(BaseModel):
    """Outcome of one service instance."""

    org: str = Field(..., description='Org name')
    space: str = Field(..., description='Space name')
    name: str = Field(..., description='Service instance name')
    service: str = Field(default='', description='Service offering name')
    message: str = Field(..., description='successful, skipped: <reason>, or the error')

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.org, self.space, self.name, self.service)

    @property
    def status(self) -> str:
        """Leading word of the message, shown in the result column."""
        return self.message.split(':', 1)[0]


class Summary:
    """Concurrency-safe accumulator of successes, skips and failures.

    Each counter has its own lock, separate from the lock guarding the
    results map. Re-recording the same (org, space, name, service) tuple
    replaces the previous row and moves the count to the new outcome.
    """

    def __init__(self, console: Optional[Console] = None):
        """Initialize summary.

        Args:
            console: Rich console the table is rendered to
        """
        self.console = console or Console()
        self.logger = logger.bind(component='Summary')

        self._results: Dict[Tuple[str, str, str, str], ServiceResult] = {}
        self._results_lock = threading.Lock()

        self._success_count = 0
        self._success_lock = threading.Lock()
        self._skipped_count = 0
        self._skipped_lock = threading.Lock()
        self._failure_count = 0
        self._failure_lock = threading.Lock()

    @property
    def success_count(self) -> int:
        with self._success_lock:
            return self._success_count

    @property
    def skipped_count(self) -> int:
        with self._skipped_lock:
            return self._skipped_count

    @property
    def failure_count(self) -> int:
        with self._failure_lock:
            return self._failure_count

    def add_successful_service(self, org: str, space: str, name: str, service: str) -> None:
        if not name:
            return
        self._record(
            ServiceResult(
                org=org, space=space, name=name, service=service, message=SUCCESSFUL
            )
        )

    def add_skipped_service(
        self, org: str, space: str, name: str, service: str, reason
    ) -> None:
        if not name:
            return
        self._record(
            ServiceResult(
                org=org, space=space, name=name, service=service, message=f'skipped: {reason}'
            )
        )

    def add_failed_service(self, org: str, space: str, name: str, service: str, error) -> None:
        if not name:
            return
        self._record(
            ServiceResult(org=org, space=space, name=name, service=service, message=str(error))
        )

    def _record(self, result: ServiceResult) -> None:
        with self._results_lock:
            previous = self._results.get(result.key)
            self._results[result.key] = result

        if previous is not None:
            self._adjust(previous.message, -1)
        self._adjust(result.message, 1)

    def _adjust(self, message: str, delta: int) -> None:
        if message == SUCCESSFUL:
            with self._success_lock:
                self._success_count += delta
        elif message.startswith('skipped: '):
            with self._skipped_lock:
                self._skipped_count += delta
        else:
            with self._failure_lock:
                self._failure_count += delta

    def results(self) -> List[ServiceResult]:
        """Return a snapshot sorted by org, space and service instance name."""
        with self._results_lock:
            snapshot = list(self._results.values())
        return sorted(snapshot, key=lambda r: (r.org, r.space, r.name))

    def has_failures(self) -> bool:
        return self.failure_count > 0

    def display(self) -> None:
        """Render the results table and the aggregate counts.

        Nothing is rendered when no result has been recorded.
        """
        results = self.results()
        if not results:
            self.logger.info('Migration summary: no results found')
            return

        table = Table(box=box.SIMPLE_HEAD, show_edge=False, pad_edge=False)
        table.add_column('Org', min_width=10)
        table.add_column('Space', min_width=10)
        table.add_column('Name', min_width=10)
        table.add_column('Service', min_width=10)
        table.add_column('Result', min_width=10)

        styles = {SUCCESSFUL: 'green', 'skipped': 'yellow'}
        for result in results:
            table.add_row(
                result.org,
                result.space,
                result.name,
                result.service,
                result.status,
                style=styles.get(result.status, 'red'),
            )

        totals = (
            f'{self.success_count} successes, '
            f'{self.skipped_count} skipped, '
            f'{self.failure_count} errors.'
        )
        self.console.print(table)
        self.console.print(f'Migration summary: {totals}')
        self.logger.info(f'Migration summary: {totals}')

        for result in results:
            if result.status not in styles:
                self.logger.error(
                    f'{result.org}/{result.space}/{result.name}: {result.message}'
                )
