"""Import side of the hierarchy walk: export directory to the target foundation."""

import os
from typing import List

from loguru import logger
from pydantic import ValidationError
from yaml import YAMLError

from ..api.exceptions import OrganizationNotFoundError, SpaceNotFoundError
from ..io.parser import FileDescriptor, iter_manifests, list_org_dirs, list_space_dirs
from ..models.service_instance import ServiceInstance
from .exceptions import ImportDirectoryNotFoundError
from .mover import InstanceMover
from .strategy import MigrationContext
from .walker import OrgFilter, run_bounded


class SpaceImporter:
    """Imports the service instance manifests of one space directory."""

    def __init__(self, context: MigrationContext, mover: InstanceMover):
        """Initialize space importer.

        Args:
            context: Run-scoped dependencies
            mover: Instance mover recording each outcome
        """
        self.context = context
        self.mover = mover
        self.logger = logger.bind(component='SpaceImporter')

    @property
    def base_dir(self) -> str:
        return self.context.config.export_dir

    async def import_space(self, org: str, space: str) -> None:
        """Import every service instance manifest found under org/space."""
        descriptors = list(iter_manifests(self.base_dir, org, space))
        self.logger.info(f'Importing {len(descriptors)} manifests into {org}/{space}')

        async def import_one(descriptor: FileDescriptor) -> None:
            try:
                instance = self.context.parser.unmarshal(ServiceInstance, descriptor)
            except (OSError, YAMLError, ValidationError) as e:
                self.context.summary.add_failed_service(
                    org, space, descriptor.name, '', f'failed to read {descriptor.path}: {e}'
                )
                self.logger.error(f'failed to read {descriptor.path}: {e}')
                return

            if not (instance.service and instance.type and instance.name):
                self.logger.debug(f'{descriptor.path} is not a service instance manifest')
                return
            await self.mover.import_instance(org, space, instance)

        await run_bounded(descriptors, import_one, self.context.config.max_workers)


class OrgImporter:
    """Walks the org and space directories of the export directory."""

    def __init__(self, context: MigrationContext, space_importer: SpaceImporter):
        """Initialize org importer.

        Args:
            context: Run-scoped dependencies
            space_importer: Importer handling each space
        """
        self.context = context
        self.space_importer = space_importer
        self.org_filter = OrgFilter(
            context.config.include_orgs, context.config.exclude_orgs
        )
        self.logger = logger.bind(component='OrgImporter')

    @property
    def base_dir(self) -> str:
        return self.context.config.export_dir

    def check_import_dir(self) -> None:
        """Fail unless the import directory exists.

        Raises:
            ImportDirectoryNotFoundError: If the directory is missing
        """
        if not os.path.isdir(self.base_dir):
            raise ImportDirectoryNotFoundError(self.base_dir)

    async def import_all(self) -> None:
        """Import every org directory that passes the org filter."""
        self.check_import_dir()
        for org in list_org_dirs(self.base_dir):
            if self.org_filter.should_process(org):
                await self.import_org(org)

    async def import_orgs(self, names: List[str]) -> None:
        """Import the named org directories.

        Raises:
            ImportDirectoryNotFoundError: If the import directory is missing
            OrganizationNotFoundError: If an org directory does not exist
        """
        self.check_import_dir()
        for name in names:
            if not os.path.isdir(os.path.join(self.base_dir, name)):
                raise OrganizationNotFoundError(name)
            if self.org_filter.should_process(name):
                await self.import_org(name)

    async def import_org(self, org: str) -> None:
        self.logger.info(f'Importing org {org}')
        for space in list_space_dirs(self.base_dir, org):
            await self.space_importer.import_space(org, space)

    async def import_space(self, org: str, space: str) -> None:
        """Import one space directory.

        Raises:
            ImportDirectoryNotFoundError: If the import directory is missing
            OrganizationNotFoundError: If the org directory does not exist
            SpaceNotFoundError: If the space directory does not exist
        """
        self.check_import_dir()
        if not os.path.isdir(os.path.join(self.base_dir, org)):
            raise OrganizationNotFoundError(org)
        if not os.path.isdir(os.path.join(self.base_dir, org, space)):
            raise SpaceNotFoundError(org, space)
        await self.space_importer.import_space(org, space)
