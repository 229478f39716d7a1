"""Export side of the hierarchy walk: source CF API to the export directory."""

from typing import Any, Dict, List

from loguru import logger

from ..api.cf_client import CFClient
from ..models.service_instance import (
    MANAGED_SERVICE_INSTANCE,
    USER_PROVIDED_SERVICE_INSTANCE,
    ServiceBinding,
    ServiceInstance,
    ServiceKey,
)
from .mover import InstanceMover
from .strategy import MigrationContext
from .walker import OrgFilter, run_bounded


USER_PROVIDED_OFFERING = 'user-provided'


def _relationship_guid(resource: Dict[str, Any], name: str) -> str:
    data = (resource.get('relationships') or {}).get(name, {}).get('data') or {}
    return data.get('guid', '')


async def describe_instance(client: CFClient, resource: Dict[str, Any]) -> ServiceInstance:
    """Read everything the CF API knows about a service instance.

    Args:
        client: Source CF client
        resource: Service instance resource as listed by the API

    Returns:
        Instance with plan, offering, parameters, bindings and keys resolved
    """
    guid = resource['guid']
    user_provided = resource.get('type') == 'user-provided'
    instance = ServiceInstance(
        name=resource.get('name', ''),
        guid=guid,
        type=USER_PROVIDED_SERVICE_INSTANCE if user_provided else MANAGED_SERVICE_INSTANCE,
        tags=resource.get('tags') or [],
        syslog_drain_url=resource.get('syslog_drain_url') or '',
        route_service_url=resource.get('route_service_url') or '',
        dashboard_url=resource.get('dashboard_url') or '',
    )

    if user_provided:
        instance.service = USER_PROVIDED_OFFERING
        instance.credentials = await client.get_user_provided_credentials(guid)
    else:
        plan = await client.get_service_plan(
            _relationship_guid(resource, 'service_plan')
        )
        instance.plan = plan['name']
        instance.service = plan['service']
        instance.params = await client.get_service_instance_parameters(guid)

    app_names: Dict[str, str] = {}
    for binding in await client.list_service_bindings(guid):
        details = await client.get_binding_details(binding['guid'])
        parameters = await client.get_binding_parameters(binding['guid'])
        app_guid = _relationship_guid(binding, 'app')
        instance.service_bindings.append(
            ServiceBinding(
                guid=binding['guid'],
                name=binding.get('name') or '',
                app_guid=app_guid,
                service_instance_guid=guid,
                credentials=details.get('credentials') or {},
                syslog_drain_url=details.get('syslog_drain_url') or '',
                volume_mounts=details.get('volume_mounts'),
                binding_options=parameters or None,
            )
        )
        if app_guid:
            if app_guid not in app_names:
                app = await client.get_app(app_guid)
                app_names[app_guid] = app.get('name', '')
            instance.apps[binding['guid']] = app_names[app_guid]

    for key in await client.list_service_keys(guid):
        details = await client.get_binding_details(key['guid'])
        instance.service_keys.append(
            ServiceKey(
                name=key.get('name') or '',
                guid=key['guid'],
                service_instance_guid=guid,
                credentials=details.get('credentials') or {},
            )
        )
    return instance


class SpaceExporter:
    """Exports the service instances of one space."""

    def __init__(self, context: MigrationContext, mover: InstanceMover):
        """Initialize space exporter.

        Args:
            context: Run-scoped dependencies
            mover: Instance mover recording each outcome
        """
        self.context = context
        self.mover = mover
        self.logger = logger.bind(component='SpaceExporter')

    async def export_space(self, org: str, space: Dict[str, Any]) -> None:
        """Export every service instance of a space resource."""
        client = self.context.clients.source_cf_client()
        space_name = space['name']
        resources = await client.list_service_instances(space['guid'])
        self.logger.info(
            f'Exporting {len(resources)} service instances from {org}/{space_name}'
        )

        async def export_one(resource: Dict[str, Any]) -> None:
            try:
                instance = await describe_instance(client, resource)
            except Exception as e:
                self.context.summary.add_failed_service(
                    org, space_name, resource.get('name', ''), '', e
                )
                self.logger.error(
                    f'failed to read service instance {resource.get("name")}: {e}'
                )
                return
            await self.mover.export_instance(org, space_name, instance)

        await run_bounded(resources, export_one, self.context.config.max_workers)


class OrgExporter:
    """Walks orgs and spaces of the source foundation."""

    def __init__(self, context: MigrationContext, space_exporter: SpaceExporter):
        """Initialize org exporter.

        Args:
            context: Run-scoped dependencies
            space_exporter: Exporter handling each space
        """
        self.context = context
        self.space_exporter = space_exporter
        self.org_filter = OrgFilter(
            context.config.include_orgs, context.config.exclude_orgs
        )
        self.logger = logger.bind(component='OrgExporter')

    @property
    def client(self) -> CFClient:
        return self.context.clients.source_cf_client()

    async def export_all(self) -> None:
        """Export every org visible to the source CF client."""
        for org in await self.client.list_orgs():
            if self.org_filter.should_process(org['name']):
                await self.export_org(org)

    async def export_orgs(self, names: List[str]) -> None:
        """Export the named orgs.

        Raises:
            OrganizationNotFoundError: If an org does not exist
        """
        for name in names:
            org = await self.client.get_org_by_name(name)
            if self.org_filter.should_process(name):
                await self.export_org(org)

    async def export_org(self, org: Dict[str, Any]) -> None:
        self.logger.info(f'Exporting org {org["name"]}')
        for space in await self.client.list_spaces(org['guid']):
            await self.space_exporter.export_space(org['name'], space)

    async def export_space(self, org: str, space: str) -> None:
        """Export one named space.

        Raises:
            OrganizationNotFoundError: If the org does not exist
            SpaceNotFoundError: If the space does not exist in the org
        """
        found = await self.client.get_space_by_name(org, space)
        await self.space_exporter.export_space(org, found)

