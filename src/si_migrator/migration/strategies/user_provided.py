"""Strategy for user-provided service instances."""

from typing import Any, Dict

from ...api.cf_client import CFClient
from ...models.service_instance import ServiceInstance
from .default import DefaultStrategy


class UserProvidedStrategy(DefaultStrategy):
    """Recreates user-provided instances; their credentials are the payload."""

    name = 'ups'

    async def create_instance(
        self, client: CFClient, space_guid: str, instance: ServiceInstance
    ) -> Dict[str, Any]:
        return await client.create_user_provided_service_instance(
            space_guid,
            instance.name,
            credentials=instance.credentials,
            syslog_drain_url=instance.syslog_drain_url,
            route_service_url=instance.route_service_url,
            tags=instance.tag_list(),
        )

    async def update_instance(
        self, client: CFClient, guid: str, instance: ServiceInstance
    ) -> None:
        await client.update_user_provided_service_instance(
            guid,
            credentials=instance.credentials,
            syslog_drain_url=instance.syslog_drain_url,
            route_service_url=instance.route_service_url,
            tags=instance.tag_list(),
        )
