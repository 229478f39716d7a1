"""Shared fixtures for migration tests."""

import inspect
import io
from unittest.mock import AsyncMock, Mock

import pytest
from rich.console import Console

from si_migrator.api.cf_client import CFClient
from si_migrator.config.config import Config
from si_migrator.migration.clients import ClientHolder
from si_migrator.migration.strategy import MigrationContext
from si_migrator.migration.summary import Summary
from si_migrator.utils.shell import CommandResult, ShellExecutor


def make_cf_client() -> Mock:
    """CF client mock whose coroutine methods are AsyncMocks."""
    client = Mock(spec=CFClient)
    for name in dir(CFClient):
        if name.startswith('_'):
            continue
        if inspect.iscoroutinefunction(getattr(CFClient, name)):
            setattr(client, name, AsyncMock())
    return client


@pytest.fixture
def make_context(tmp_path):
    """Build a migration context over mocked clients and executor."""

    def build(**config_values) -> MigrationContext:
        config_values.setdefault('export_dir', str(tmp_path / 'export'))
        config = Config(**config_values)

        clients = Mock(spec=ClientHolder)
        source_cf, target_cf = make_cf_client(), make_cf_client()
        clients.source_cf_client.return_value = source_cf
        clients.target_cf_client.return_value = target_cf
        clients.cf_client.side_effect = lambda is_source: source_cf if is_source else target_cf

        executor = Mock(spec=ShellExecutor)
        executor.execute = AsyncMock(return_value=CommandResult(output='', exit_code=0))

        return MigrationContext(
            config=config,
            clients=clients,
            executor=executor,
            summary=Summary(Console(file=io.StringIO(), width=200)),
        )

    return build
