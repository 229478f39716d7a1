"""Strategies moving instances by writing Cloud Controller database records.

Brokers of this family cannot re-provision an existing backing resource, so
the instance, its bindings and its keys are written directly into the target
Cloud Controller database. Records are created through the Cloud Controller
console on the target ``cf`` deployment, which encrypts credentials with the
configured database encryption key.
"""

import base64
import json
import shlex
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ...api.bosh_client import BoshClient, Gateway
from ...api.exceptions import BoshError
from ...config.config import FieldError
from ...models.service_instance import AppManifest, ServiceInstance
from ..exceptions import MigrationError
from ..strategy import replace_route_domains
from .credhub import CF_DEPLOYMENT_PATTERN
from .default import DefaultStrategy


CONSOLE = (
    'cd /var/vcap/packages/cloud_controller_ng/cloud_controller_ng && '
    'sudo -E /var/vcap/jobs/cloud_controller_ng/bin/console'
)

# Ruby run in the console. Every snippet reads its JSON payload from
# CCDB_PAYLOAD and prints RESULT=<guid> on success.
PRELUDE = """\
require 'json'
p = JSON.parse(Base64.decode64(ENV['CCDB_PAYLOAD']))
Sequel::Model.db = Sequel.connect(
  adapter: 'mysql2', host: p['db_host'], user: p['db_username'],
  password: p['db_password'], database: 'ccdb')
VCAP::CloudController::Encryptor.db_encryption_key = p['db_encryption_key']
"""

CREATE_INSTANCE_SCRIPT = """\
space = VCAP::CloudController::Space.join(:organizations, id: :organization_id)
  .where(Sequel[:organizations][:name] => p['org'], Sequel[:spaces][:name] => p['space'])
  .select_all(:spaces).first
plan = VCAP::CloudController::ServicePlan
  .join(:services, id: :service_id)
  .where(Sequel[:services][:label] => p['service'], Sequel[:service_plans][:name] => p['plan'])
  .select_all(:service_plans).first
si = VCAP::CloudController::ManagedServiceInstance.create(
  name: p['name'], space: space, service_plan: plan, credentials: p['credentials'],
  dashboard_url: p['dashboard_url'], tags: p['tags'])
puts "RESULT=#{si.guid}"
"""

CREATE_APP_SCRIPT = """\
space = VCAP::CloudController::Space.join(:organizations, id: :organization_id)
  .where(Sequel[:organizations][:name] => p['org'], Sequel[:spaces][:name] => p['space'])
  .select_all(:spaces).first
app = VCAP::CloudController::AppModel.find(name: p['app'], space_guid: space.guid) ||
  VCAP::CloudController::AppModel.create(name: p['app'], space_guid: space.guid)
puts "RESULT=#{app.guid}"
"""

CREATE_BINDING_SCRIPT = """\
si = VCAP::CloudController::ServiceInstance.find(guid: p['instance_guid'])
app = VCAP::CloudController::AppModel.find(guid: p['app_guid'])
b = VCAP::CloudController::ServiceBinding.create(
  name: p['name'], service_instance: si, app: app, type: 'app',
  credentials: p['credentials'], syslog_drain_url: p['syslog_drain_url'])
puts "RESULT=#{b.guid}"
"""

CREATE_KEY_SCRIPT = """\
si = VCAP::CloudController::ServiceInstance.find(guid: p['instance_guid'])
k = VCAP::CloudController::ServiceKey.create(
  name: p['name'], service_instance: si, credentials: p['credentials'])
puts "RESULT=#{k.guid}"
"""


class DatabaseConfig(BaseModel):
    """Connection settings of one Cloud Controller database."""

    model_config = ConfigDict(extra='ignore')

    db_host: str = ''
    db_username: str = ''
    db_password: str = ''
    db_encryption_key: str = ''
    ssh_host: str = ''
    ssh_username: str = ''
    ssh_password: str = ''
    ssh_private_key: str = ''
    ssh_tunnel: bool = False

    def is_set(self) -> bool:
        return self != DatabaseConfig()

    def validate_config(self) -> None:
        """Check the connection settings.

        Raises:
            FieldError: If a required setting is empty
        """
        required = [
            ('ccdb host', self.db_host),
            ('ccdb username', self.db_username),
            ('ccdb password', self.db_password),
            ('ccdb encryption key', self.db_encryption_key),
        ]
        if self.ssh_tunnel:
            required += [('ssh host', self.ssh_host), ('ssh username', self.ssh_username)]
        for field, value in required:
            if not value:
                raise FieldError(field, "can't be empty")
        if self.ssh_tunnel and not (self.ssh_password or self.ssh_private_key):
            raise FieldError('ssh password or ssh private key', "can't be empty")


class CCDBSettings(BaseModel):
    model_config = ConfigDict(extra='ignore')

    source_ccdb: DatabaseConfig = Field(default_factory=DatabaseConfig)
    target_ccdb: DatabaseConfig = Field(default_factory=DatabaseConfig)

    def database(self, is_source: bool) -> DatabaseConfig:
        return self.source_ccdb if is_source else self.target_ccdb


def parse_result(output: str) -> str:
    """Return the value of the last ``RESULT=`` line printed by the console."""
    for line in reversed(output.splitlines()):
        line = line.strip()
        if line.startswith('RESULT='):
            return line[len('RESULT='):]
    raise MigrationError('cloud controller console did not report a result')


class CCDBStrategy(DefaultStrategy):
    """Base for service types moved through the Cloud Controller database."""

    settings_model = CCDBSettings

    def validate(self, instance: ServiceInstance, is_export: bool) -> None:
        database = self.settings.database(is_export)
        if database.is_set():
            try:
                database.validate_config()
            except FieldError as e:
                raise MigrationError(str(e), instance=instance.name)

    async def export_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        """Capture the manifest of every app bound to the instance."""
        client = self.context.clients.source_cf_client()
        for binding in instance.service_bindings:
            if not binding.app_guid:
                continue
            app_name = instance.apps.get(binding.guid)
            if not app_name:
                app = await client.get_app(binding.app_guid)
                app_name = app.get('name', '')
                instance.apps[binding.guid] = app_name

            self.logger.debug(f'Downloading manifest of app {app_name}')
            raw = await client.get_app_manifest(binding.app_guid)
            manifest = AppManifest.model_validate(yaml.safe_load(raw) or {})
            instance.app_manifest.applications.extend(manifest.applications)

        domains = self.context.domains_to_replace
        if domains:
            replace_route_domains(instance.app_manifest, domains)
        return instance

    async def import_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        client = self.context.clients.target_cf_client()
        space_guid = await self.target_space_guid(client, org, space)
        if await client.get_service_instance_by_name(space_guid, instance.name):
            raise MigrationError(
                f'service instance name "{instance.name}" already exists',
                instance=instance.name,
            )

        bosh = self.context.clients.target_bosh_client()
        database = await self.database_credentials(bosh, is_source=False)
        if not database.db_encryption_key:
            raise MigrationError('ccdb encryption key is not set')
        database.validate_config()

        self.rewrite_domains(instance)
        console = _Console(bosh, database)
        async with console:
            self.logger.debug(f'Creating service instance {instance.guid} in ccdb')
            guid = parse_result(
                await console.run(
                    CREATE_INSTANCE_SCRIPT,
                    {
                        'org': org,
                        'space': space,
                        'name': instance.name,
                        'service': instance.service,
                        'plan': instance.plan,
                        'credentials': instance.credentials,
                        'dashboard_url': instance.dashboard_url,
                        'tags': instance.tag_list(),
                    },
                )
            )

            for binding in instance.service_bindings:
                app_name = instance.apps.get(binding.guid)
                if not app_name:
                    continue
                self.logger.debug(f'Creating placeholder app {app_name} in ccdb')
                try:
                    app_guid = parse_result(
                        await console.run(
                            CREATE_APP_SCRIPT, {'org': org, 'space': space, 'app': app_name}
                        )
                    )
                except MigrationError as e:
                    self.logger.error(
                        f'Could not create service binding {binding.name!r} '
                        f'for app {app_name!r}: {e}'
                    )
                    continue
                await console.run(
                    CREATE_BINDING_SCRIPT,
                    {
                        'instance_guid': guid,
                        'app_guid': app_guid,
                        'name': binding.name,
                        'credentials': binding.credentials,
                        'syslog_drain_url': binding.syslog_drain_url,
                    },
                )

            if self.context.ignore_service_keys:
                return instance

            errors: List[str] = []
            for key in instance.service_keys:
                try:
                    await console.run(
                        CREATE_KEY_SCRIPT,
                        {
                            'instance_guid': guid,
                            'name': key.name,
                            'credentials': key.credentials,
                        },
                    )
                except MigrationError as e:
                    errors.append(
                        f'failed to create service key "{key.name}", '
                        f'for service instance "{instance.name}": {e}'
                    )
            if errors:
                raise MigrationError(': '.join(errors), instance=instance.name)
        return instance

    async def database_credentials(self, bosh: BoshClient, is_source: bool) -> DatabaseConfig:
        """Return the database settings, completing empty ones from the platform.

        Host, credentials and encryption key are read from the ``cf``
        deployment and the director CredHub when not configured.
        """
        database = self.settings.database(is_source).model_copy()
        if all(
            [
                database.db_host,
                database.db_username,
                database.db_password,
                database.db_encryption_key,
            ]
        ):
            return database

        deployment = await bosh.find_deployment(CF_DEPLOYMENT_PATTERN)
        if deployment is None:
            raise MigrationError(
                f'failed to find deployment name with pattern "{CF_DEPLOYMENT_PATTERN}"'
            )
        self.logger.debug(f'Fetching ccdb credentials from {deployment.name}')

        if not database.db_host:
            vm = await bosh.find_vm(deployment.name, 'proxy')
            if vm is None or not vm.ips:
                raise MigrationError(f'no database proxy found in {deployment.name}')
            database.db_host = vm.ips[0]

        if not database.db_username or not database.db_password:
            credential = await bosh.credhub_get(f'/p-bosh/{deployment.name}/cc-db-credentials')
            value = credential.get('value') or {}
            database.db_username = value.get('username', '')
            database.db_password = value.get('password', '')

        if not database.db_encryption_key:
            credential = await bosh.credhub_get(
                f'/opsmgr/{deployment.name}/cloud_controller/db_encryption_credentials'
            )
            value = credential.get('value') or {}
            database.db_encryption_key = value.get('password', '')

        return database


class _Console:
    """Runs Ruby snippets in the Cloud Controller console of the target."""

    def __init__(self, bosh: BoshClient, database: DatabaseConfig):
        self.bosh = bosh
        self.database = database
        self.deployment = ''
        self.instance = ''
        self.gateway: Optional[Gateway] = None
        self._key_dir: Optional[tempfile.TemporaryDirectory] = None

    async def __aenter__(self) -> '_Console':
        deployment = await self.bosh.find_deployment(CF_DEPLOYMENT_PATTERN)
        if deployment is None:
            raise MigrationError('cf deployment not found')
        vm = await self.bosh.find_vm(deployment.name, 'cloud_controller_ng')
        if vm is None:
            raise MigrationError(f'no cloud controller found in {deployment.name}')
        self.deployment, self.instance = deployment.name, vm.instance

        if self.database.ssh_tunnel:
            if not self.database.ssh_private_key:
                raise MigrationError('ssh tunnel to the ccdb requires an ssh private key')
            self._key_dir = tempfile.TemporaryDirectory()
            key_path = Path(self._key_dir.name) / 'gateway_key'
            key_path.write_text(self.database.ssh_private_key)
            key_path.chmod(0o600)
            self.gateway = Gateway(
                host=self.database.ssh_host,
                user=self.database.ssh_username,
                private_key_path=str(key_path),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._key_dir is not None:
            self._key_dir.cleanup()

    async def run(self, script: str, payload: Dict[str, Any]) -> str:
        payload = {
            **payload,
            'db_host': self.database.db_host,
            'db_username': self.database.db_username,
            'db_password': self.database.db_password,
            'db_encryption_key': self.database.db_encryption_key,
        }
        encoded_payload = base64.b64encode(json.dumps(payload).encode()).decode()
        encoded_script = base64.b64encode((PRELUDE + script).encode()).decode()
        command = (
            f'export CCDB_PAYLOAD={shlex.quote(encoded_payload)} && '
            f'echo {shlex.quote(encoded_script)} | base64 -d | {CONSOLE}'
        )
        try:
            return await self.bosh.ssh(
                self.deployment, self.instance, command, gateway=self.gateway
            )
        except BoshError as e:
            raise MigrationError(str(e)) from e


class ECSStrategy(CCDBStrategy):
    name = 'ecs'


class SQLServerStrategy(CCDBStrategy):
    name = 'sqlserver'
