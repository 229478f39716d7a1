"""Migration engine - main entry point for export and import runs."""

from typing import Awaitable, Callable, List, Optional

from loguru import logger
from rich.console import Console

from ..config.config import Config
from ..utils.shell import ShellExecutor
from .clients import ClientHolder
from .exporter import OrgExporter, SpaceExporter
from .importer import OrgImporter, SpaceImporter
from .mover import InstanceMover
from .registry import StrategyRegistry
from .strategy import MigrationContext
from .summary import Summary


class MigrationEngine:
    """Wires the run-scoped components and drives one export or import."""

    def __init__(
        self,
        config: Config,
        console: Optional[Console] = None,
        clients: Optional[ClientHolder] = None,
        executor: Optional[ShellExecutor] = None,
    ):
        """Initialize migration engine.

        Args:
            config: Run configuration
            console: Rich console used for command output and the summary
            clients: Client holder, built from the configuration when omitted
            executor: Shell executor, built from the configuration when omitted

        Raises:
            ConfigurationError: If a migrator's settings cannot be decoded
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        self.executor = executor or ShellExecutor(
            dry_run=config.dry_run,
            debug=config.debug,
            timeout=config.command_timeout,
            output=console.file if console else None,
        )
        self.clients = clients or ClientHolder(config, self.executor)
        self.summary = Summary(console)

        self.context = MigrationContext(
            config=config,
            clients=self.clients,
            executor=self.executor,
            summary=self.summary,
        )
        self.registry = StrategyRegistry(self.context, config.migration)
        self.mover = InstanceMover(self.context, self.registry)

        self.exporter = OrgExporter(self.context, SpaceExporter(self.context, self.mover))
        self.importer = OrgImporter(self.context, SpaceImporter(self.context, self.mover))

    async def export_all(self) -> Summary:
        """Export every org of the source foundation."""
        return await self._run(True, self.exporter.export_all)

    async def export_orgs(self, names: List[str]) -> Summary:
        """Export the named orgs of the source foundation."""
        return await self._run(True, lambda: self.exporter.export_orgs(names))

    async def export_space(self, org: str, space: str) -> Summary:
        """Export one space of the source foundation."""
        return await self._run(True, lambda: self.exporter.export_space(org, space))

    async def import_all(self) -> Summary:
        """Import every org found in the import directory."""
        self.importer.check_import_dir()
        return await self._run(False, self.importer.import_all)

    async def import_orgs(self, names: List[str]) -> Summary:
        """Import the named orgs from the import directory."""
        self.importer.check_import_dir()
        return await self._run(False, lambda: self.importer.import_orgs(names))

    async def import_space(self, org: str, space: str) -> Summary:
        """Import one space from the import directory."""
        self.importer.check_import_dir()
        return await self._run(False, lambda: self.importer.import_space(org, space))

    async def _run(self, is_source: bool, walk: Callable[[], Awaitable[None]]) -> Summary:
        direction = 'export' if is_source else 'import'
        self.logger.info(f'Starting {direction}')
        try:
            self._check_settings()
            self._test_connectivity(is_source)
            await walk()
            self.logger.info(f'Finished {direction}')
            return self.summary
        except Exception as e:
            self.logger.error(f'{direction.capitalize()} failed: {e}')
            raise
        finally:
            self.clients.close()

    def _check_settings(self) -> None:
        """Validate every configured CF API and BOSH director before walking.

        Raises:
            ConfigurationError: If a configured block is incomplete or has
                conflicting authentication
        """
        for is_source in (True, False):
            cf_api = self.config.cf_api(is_source)
            if cf_api.is_set():
                cf_api.validate_auth()
            bosh = self.config.bosh(is_source)
            if bosh.is_set():
                bosh.validate_config()

    def _test_connectivity(self, is_source: bool) -> None:
        """Build the CF client of the walked foundation and check it answers.

        Raises:
            ConfigurationError: If the client settings are invalid
            ConnectionError: If the Cloud Controller cannot be reached
        """
        side = 'source' if is_source else 'target'
        self.logger.info(f'Testing connectivity to the {side} Cloud Controller')
        client = self.clients.cf_client(is_source)
        if not client.test_connection():
            raise ConnectionError(f'Cannot connect to {side} Cloud Controller')
        self.logger.info('Connectivity test passed')
