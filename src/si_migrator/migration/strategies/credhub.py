"""Strategy for CredHub service broker instances."""

import asyncio
import json
import shlex
from typing import Any, Dict

from ...models.service_instance import ServiceInstance
from ..exceptions import MigrationError
from .default import DefaultStrategy


CF_DEPLOYMENT_PATTERN = '^cf-'
CREDHUB_REF = 'credhub-ref'

READ_CREDENTIAL_SCRIPT = """\
ACCESS_TOKEN=$(curl -k -s -X POST \\
  -H "Content-Type: application/x-www-form-urlencoded" -H "Accept: application/json" \\
  -d "client_id=credhub_admin_client&client_secret=$CREDHUB_SECRET&grant_type=client_credentials&token_format=jwt" \\
  https://uaa.service.cf.internal:8443/oauth/token | grep -Eo '"access_token"[^,]*' | grep -Eo '[^:]*$' | tr -d '"')
curl -k -s -X GET "https://credhub.service.cf.internal:8844/api/v1/data?name=$NAME&current=true" \\
  -H "Content-Type: application/json" -H "Authorization: Bearer $ACCESS_TOKEN"
"""


def find_credhub_ref(instance: ServiceInstance) -> str:
    """Return the CredHub reference held in the instance's binding credentials.

    Raises:
        MigrationError: If no binding carries a reference
    """
    for binding in instance.service_bindings:
        ref = binding.credentials.get(CREDHUB_REF)
        if ref:
            return ref
    raise MigrationError(
        f"failed to find credhub-ref in service binding for instance guid '{instance.guid}'",
        instance=instance.name,
    )


def extract_credentials(output: str) -> Dict[str, Any]:
    """Decode the value of the current credential from a CredHub data response.

    The response is expected on the last non-empty line of the output.
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise MigrationError("couldn't extract credentials, output is empty")
    try:
        data = json.loads(lines[-1])
        value = data['data'][0]['value']
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise MigrationError(f"couldn't extract credentials: {e}")
    if not isinstance(value, dict):
        raise MigrationError("couldn't extract credentials, value is not a mapping")
    return value


class CredHubStrategy(DefaultStrategy):
    """Copies the credential a CredHub instance stores in the runtime CredHub."""

    name = 'credhub'

    def validate(self, instance: ServiceInstance, is_export: bool) -> None:
        if is_export:
            find_credhub_ref(instance)
        elif not instance.credentials:
            raise MigrationError(
                f'no credentials exported for {instance.name}', instance=instance.name
            )

    async def export_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        ref = find_credhub_ref(instance)
        bosh = self.context.clients.source_bosh_client()
        opsman = self.context.clients.source_opsman_client()

        deployment = await bosh.find_deployment(CF_DEPLOYMENT_PATTERN)
        if deployment is None:
            raise MigrationError('cf deployment not found')

        secret = await asyncio.to_thread(opsman.credhub_admin_secret, deployment.name)

        vm = await bosh.find_vm(deployment.name, 'credhub')
        if vm is None:
            raise MigrationError(f'no credhub instance found in {deployment.name}')

        self.logger.debug(
            f'Retrieving credhub credentials from bosh deployment {deployment.name}, '
            f'instance {vm.instance}'
        )
        command = (
            f'export CREDHUB_SECRET={shlex.quote(secret)}\n'
            f'export NAME={shlex.quote(ref)}\n'
            f'{READ_CREDENTIAL_SCRIPT}'
        )
        output = await bosh.ssh(deployment.name, vm.instance, command)
        instance.credentials = extract_credentials(output)
        return instance

    def parameters(self, instance: ServiceInstance) -> Dict[str, Any]:
        return instance.credentials
