"""Per-instance export and import flow."""

from datetime import datetime
from typing import Optional

from loguru import logger

from ..io.parser import FileDescriptor
from ..models.service_instance import AppManifest, ServiceInstance
from .exceptions import MigrationError, UnsupportedOperationError
from .registry import StrategyRegistry
from .strategy import MigrationContext, MigrationResult, MigrationStatus


DRY_RUN_REASON = 'dry run'


class InstanceMover:
    """Moves one service instance at a time and records the outcome.

    Every call records exactly one outcome in the run summary. Errors are
    recorded, never raised, so one instance cannot stop its siblings;
    cancellation still propagates.
    """

    def __init__(self, context: MigrationContext, registry: StrategyRegistry):
        """Initialize instance mover.

        Args:
            context: Run-scoped dependencies
            registry: Strategy registry
        """
        self.context = context
        self.registry = registry
        self.logger = logger.bind(component='InstanceMover')

    def exclusion_reason(self, instance: ServiceInstance) -> Optional[str]:
        """Return why the services or instances filter leaves an instance out."""
        config = self.context.config
        if config.instances and instance.name not in config.instances:
            return 'not in the selected instances'
        if not self.registry.is_selected(instance, config.services):
            return 'not in the selected services'
        return None

    async def export_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> MigrationResult:
        """Export one instance into the export directory.

        Args:
            org: Source org name
            space: Source space name
            instance: Instance as read from the source foundation

        Returns:
            The recorded outcome
        """
        return await self._move(org, space, instance, is_export=True)

    async def import_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> MigrationResult:
        """Import one instance read from the export directory."""
        return await self._move(org, space, instance, is_export=False)

    async def _move(
        self, org: str, space: str, instance: ServiceInstance, is_export: bool
    ) -> MigrationResult:
        direction = 'export' if is_export else 'import'
        result = MigrationResult(
            org=org,
            space=space,
            name=instance.name,
            service=instance.service,
            status=MigrationStatus.SKIPPED,
            instance=instance,
        )

        reason = self.exclusion_reason(instance)
        strategy = None
        if reason is None:
            strategy = self.registry.resolve(instance)
            if strategy is None:
                reason = f'no migrator for service "{instance.service}"'
        if reason is None and self.context.dry_run:
            reason = DRY_RUN_REASON
        if reason is not None:
            return self._skipped(result, reason)

        self.logger.info(
            f'Starting {direction} of {org}/{space}/{instance.name} '
            f'with the {strategy.name} migrator'
        )
        try:
            strategy.validate(instance, is_export)
        except UnsupportedOperationError as e:
            return self._skipped(result, str(e))
        except MigrationError as e:
            if not instance.service_bindings:
                return self._skipped(result, str(e))
            return self._failed(result, f'failed to migrate {instance.name}: {e}')

        try:
            if is_export:
                moved = await strategy.export_instance(org, space, instance)
                self._write(org, space, moved)
            else:
                moved = await strategy.import_instance(org, space, instance)
        except UnsupportedOperationError as e:
            return self._skipped(result, str(e))
        except Exception as e:
            return self._failed(result, f'failed to migrate {instance.name}: {e}')

        result.status = MigrationStatus.COMPLETED
        result.instance = moved
        result.completed_at = datetime.now()
        self.context.summary.add_successful_service(
            org, space, instance.name, instance.service
        )
        self.logger.info(f'Finished {direction} of {org}/{space}/{instance.name}')
        return result

    def _write(self, org: str, space: str, instance: ServiceInstance) -> None:
        base_dir = self.context.config.export_dir
        parser = self.context.parser
        for app in instance.app_manifest.applications:
            name = app.name.replace('/', '-')
            parser.marshal(
                AppManifest(applications=[app]),
                FileDescriptor(base_dir, org, space, f'{name}_manifest'),
            )
        parser.marshal(
            instance, FileDescriptor(base_dir, org, space, instance.name.replace('/', '-'))
        )

    def _skipped(self, result: MigrationResult, reason: str) -> MigrationResult:
        self.logger.info(f'Skipping {result.org}/{result.space}/{result.name}: {reason}')
        result.status = MigrationStatus.SKIPPED
        result.message = reason
        result.completed_at = datetime.now()
        self.context.summary.add_skipped_service(
            result.org, result.space, result.name, result.service, reason
        )
        return result

    def _failed(self, result: MigrationResult, message: str) -> MigrationResult:
        self.logger.error(message)
        result.status = MigrationStatus.FAILED
        result.message = message
        result.completed_at = datetime.now()
        self.context.summary.add_failed_service(
            result.org, result.space, result.name, result.service, message
        )
        return result
