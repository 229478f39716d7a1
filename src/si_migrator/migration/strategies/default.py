"""Strategy recreating managed service instances through the CF API."""

from typing import Any, Dict

from ...api.cf_client import CFClient
from ...api.exceptions import ServicePlanNotFoundError
from ...models.service_instance import ServiceInstance
from ..strategy import (
    MigrationStrategy,
    replace_domain,
    replace_domains_in_credentials,
    replace_route_domains,
)


class DefaultStrategy(MigrationStrategy):
    """Moves service metadata only; the broker provisions a fresh instance."""

    name = 'default'

    async def export_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        self.logger.debug(f'Exporting metadata of {org}/{space}/{instance.name}')
        return instance

    async def import_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        client = self.context.clients.target_cf_client()
        space_guid = await self.target_space_guid(client, org, space)

        self.rewrite_domains(instance)

        existing = await client.get_service_instance_by_name(space_guid, instance.name)
        if existing:
            self.logger.info(f'Updating existing service instance {instance.name}')
            guid = existing['guid']
            await self.update_instance(client, guid, instance)
        else:
            self.logger.info(f'Creating service instance {instance.name}')
            created = await self.create_instance(client, space_guid, instance)
            guid = created.get('guid', '')

        await self.recreate_bindings(client, space_guid, guid, instance)
        if not self.context.ignore_service_keys:
            await self.recreate_service_keys(client, guid, instance)
        return instance

    def rewrite_domains(self, instance: ServiceInstance) -> None:
        """Point URLs, credentials and app routes of the instance at the target domains."""
        domains = self.context.domains_to_replace
        if not domains:
            return
        instance.syslog_drain_url, _ = replace_domain(instance.syslog_drain_url, domains)
        instance.route_service_url, _ = replace_domain(instance.route_service_url, domains)
        if instance.credentials:
            instance.credentials = replace_domains_in_credentials(
                instance.credentials, domains
            )
        replace_route_domains(instance.app_manifest, domains)

    def parameters(self, instance: ServiceInstance) -> Dict[str, Any]:
        return instance.params

    async def create_instance(
        self, client: CFClient, space_guid: str, instance: ServiceInstance
    ) -> Dict[str, Any]:
        plan_guid = await client.find_service_plan(instance.service, instance.plan)
        if not plan_guid:
            raise ServicePlanNotFoundError(instance.plan, instance.name)
        return await client.create_service_instance(
            space_guid,
            plan_guid,
            instance.name,
            parameters=self.parameters(instance),
            tags=instance.tag_list(),
        )

    async def update_instance(
        self, client: CFClient, guid: str, instance: ServiceInstance
    ) -> None:
        await client.update_service_instance(
            guid, parameters=self.parameters(instance), tags=instance.tag_list()
        )

    async def recreate_bindings(
        self, client: CFClient, space_guid: str, guid: str, instance: ServiceInstance
    ) -> None:
        """Bind the new instance to the apps the source instance was bound to.

        Apps are matched by name in the target space. Bindings whose app is
        unknown or absent from the target are left out.
        """
        for binding in instance.service_bindings:
            app_name = instance.apps.get(binding.guid)
            if not app_name:
                self.logger.warning(
                    f'No app recorded for binding {binding.guid} of {instance.name}'
                )
                continue

            app = await client.get_app_by_name(space_guid, app_name)
            if not app:
                self.logger.warning(
                    f'App {app_name} not found in target space, '
                    f'not binding {instance.name}'
                )
                continue

            options = binding.binding_options
            if not isinstance(options, dict):
                options = None
            self.logger.debug(f'Binding {instance.name} to {app_name}')
            await client.create_service_binding(
                guid, app['guid'], name=binding.name, parameters=options
            )

    async def recreate_service_keys(
        self, client: CFClient, guid: str, instance: ServiceInstance
    ) -> None:
        for key in instance.service_keys:
            self.logger.debug(f'Creating service key {key.name} for {instance.name}')
            await client.create_service_key(guid, key.name)

