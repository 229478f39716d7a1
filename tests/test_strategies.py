"""Tests for the migration strategies."""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from si_migrator.api.bosh_client import VM, BoshClient, Deployment
from si_migrator.api.exceptions import (
    BoshError,
    OrganizationNotFoundError,
    ServicePlanNotFoundError,
)
from si_migrator.api.opsman_client import OpsManClient
from si_migrator.config.config import CloudControllerConfig, FieldError
from si_migrator.migration.exceptions import MigrationError
from si_migrator.migration.strategies import (
    CredHubStrategy,
    DefaultStrategy,
    ECSStrategy,
    MySQLStrategy,
    UserProvidedStrategy,
)
from si_migrator.migration.strategies.ccdb import CCDBSettings, DatabaseConfig, parse_result
from si_migrator.migration.strategies.credhub import extract_credentials, find_credhub_ref
from si_migrator.migration.strategies.mysql import (
    MySQLSettings,
    check_required,
    extract_encryption_key,
    parse_backup_datetime,
    parse_backup_id,
)
from si_migrator.migration.strategy import (
    replace_domain,
    replace_domains_in_credentials,
    replace_route_domains,
)
from si_migrator.models.service_instance import (
    AppManifest,
    Application,
    Route,
    ServiceBinding,
    ServiceInstance,
    ServiceKey,
)
from si_migrator.utils.shell import CommandResult


LIST_BACKUPS_OUTPUT = """\
Getting backups of service instance db in org team / space dev as admin...
Backup ID                                         Time of Backup
3a3b3c3d-0000-4000-8000-000000000001_1637787892   Wed Nov 24 21:04:52 UTC 2021   completed
"""


def make_bosh() -> Mock:
    bosh = Mock(spec=BoshClient)
    for name in ('find_deployment', 'find_vm', 'ssh', 'scp', 'credhub_get', 'run'):
        setattr(bosh, name, AsyncMock())
    return bosh


def find_deployment(names):
    """Return a find_deployment side effect matching patterns by prefix."""

    async def find(pattern):
        for name in names:
            if name.startswith(pattern.lstrip('^')):
                return Deployment(name=name)
        return None

    return find


class TestDomainReplacement:
    """Test domain rewriting helpers."""

    def test_replace_first_matching_domain(self):
        domains = {'apps.source.com': 'apps.target.com', 'source.com': 'other.com'}

        value, changed = replace_domain(
            'https://x.apps.source.com/a?b=apps.source.com', domains
        )

        assert changed is True
        assert value == 'https://x.apps.target.com/a?b=apps.target.com'

    def test_no_match(self):
        assert replace_domain('https://example.org', {'source.com': 'target.com'}) == (
            'https://example.org',
            False,
        )

    def test_credentials_copy(self):
        credentials = {'uri': 'https://db.source.com', 'port': 3306}

        replaced = replace_domains_in_credentials(credentials, {'source.com': 'target.com'})

        assert replaced == {'uri': 'https://db.target.com', 'port': 3306}
        assert credentials['uri'] == 'https://db.source.com'

    def test_route_domains(self):
        manifest = AppManifest(
            applications=[
                Application(
                    name='web',
                    routes=[Route(route='web.apps.source.com/api'), Route(route='web.example.org')],
                )
            ]
        )

        replace_route_domains(manifest, {'apps.source.com': 'apps.target.com'})

        assert [r.route for r in manifest.applications[0].routes] == [
            'web.apps.target.com/api',
            'web.example.org',
        ]


class TestDefaultStrategy:
    """Test recreation through the CF API."""

    @pytest.fixture(autouse=True)
    def setup(self, make_context):
        self.context = make_context(domains_to_replace={'source.com': 'target.com'})
        self.client = self.context.clients.target_cf_client()
        self.client.get_space_by_name.return_value = {'guid': 'space-1'}
        self.client.get_service_instance_by_name.return_value = None
        self.client.find_service_plan.return_value = 'plan-1'
        self.client.create_service_instance.return_value = {'guid': 'new-si'}
        self.client.get_app_by_name.return_value = {'guid': 'app-9'}
        self.strategy = DefaultStrategy(self.context)
        self.instance = ServiceInstance(
            name='db',
            type='managed_service_instance',
            service='p.redis',
            plan='small',
            tags='cache,shared',
            params={'size': 1},
            syslog_drain_url='syslog://logs.source.com',
            service_bindings=[
                ServiceBinding(guid='b-1', name='web-binding', binding_options={'role': 'rw'}),
                ServiceBinding(guid='b-2'),
            ],
            service_keys=[ServiceKey(name='key-1')],
            apps={'b-1': 'web'},
        )

    @pytest.mark.asyncio
    async def test_export_returns_instance(self):
        exported = await self.strategy.export_instance('org', 'space', self.instance)

        assert exported is self.instance

    @pytest.mark.asyncio
    async def test_import_creates_instance(self):
        await self.strategy.import_instance('org', 'space', self.instance)

        self.client.find_service_plan.assert_awaited_once_with('p.redis', 'small')
        self.client.create_service_instance.assert_awaited_once_with(
            'space-1', 'plan-1', 'db', parameters={'size': 1}, tags=['cache', 'shared']
        )
        self.client.create_service_binding.assert_awaited_once_with(
            'new-si', 'app-9', name='web-binding', parameters={'role': 'rw'}
        )
        self.client.create_service_key.assert_awaited_once_with('new-si', 'key-1')
        assert self.instance.syslog_drain_url == 'syslog://logs.target.com'

    @pytest.mark.asyncio
    async def test_import_updates_existing_instance(self):
        self.client.get_service_instance_by_name.return_value = {'guid': 'old-si'}

        await self.strategy.import_instance('org', 'space', self.instance)

        self.client.create_service_instance.assert_not_awaited()
        self.client.update_service_instance.assert_awaited_once_with(
            'old-si', parameters={'size': 1}, tags=['cache', 'shared']
        )

    @pytest.mark.asyncio
    async def test_import_ignores_service_keys(self):
        self.context.config.ignore_service_keys = True

        await self.strategy.import_instance('org', 'space', self.instance)

        self.client.create_service_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_app_is_not_bound(self):
        self.client.get_app_by_name.return_value = None

        await self.strategy.import_instance('org', 'space', self.instance)

        self.client.create_service_binding.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_plan(self):
        self.client.find_service_plan.return_value = None

        with pytest.raises(ServicePlanNotFoundError, match='service plan "small"'):
            await self.strategy.import_instance('org', 'space', self.instance)

    @pytest.mark.asyncio
    async def test_missing_org(self):
        self.client.get_space_by_name.side_effect = OrganizationNotFoundError('org')

        with pytest.raises(MigrationError, match='could not find org "org"'):
            await self.strategy.import_instance('org', 'space', self.instance)


class TestUserProvidedStrategy:
    """Test user-provided instance recreation."""

    @pytest.mark.asyncio
    async def test_import_creates_user_provided_instance(self, make_context):
        context = make_context()
        client = context.clients.target_cf_client()
        client.get_space_by_name.return_value = {'guid': 'space-1'}
        client.get_service_instance_by_name.return_value = None
        client.create_user_provided_service_instance.return_value = {'guid': 'ups-1'}
        instance = ServiceInstance(
            name='creds',
            type='user_provided_service_instance',
            credentials={'password': 'secret'},
            route_service_url='https://route.example.com',
        )

        await UserProvidedStrategy(context).import_instance('org', 'space', instance)

        client.create_user_provided_service_instance.assert_awaited_once_with(
            'space-1',
            'creds',
            credentials={'password': 'secret'},
            syslog_drain_url='',
            route_service_url='https://route.example.com',
            tags=[],
        )
        client.find_service_plan.assert_not_awaited()


class TestCredHubStrategy:
    """Test CredHub credential transfer."""

    @pytest.fixture(autouse=True)
    def setup(self, make_context):
        self.context = make_context()
        self.bosh = make_bosh()
        self.opsman = Mock(spec=OpsManClient)
        self.opsman.credhub_admin_secret.return_value = 'admin-secret'
        self.context.clients.source_bosh_client.return_value = self.bosh
        self.context.clients.source_opsman_client.return_value = self.opsman
        self.strategy = CredHubStrategy(self.context)
        self.instance = ServiceInstance(
            name='creds',
            guid='si-1',
            service='credhub',
            service_bindings=[
                ServiceBinding(guid='b-1', credentials={'credhub-ref': '/c/broker/si-1/creds'})
            ],
        )

    def test_find_credhub_ref(self):
        assert find_credhub_ref(self.instance) == '/c/broker/si-1/creds'

    def test_find_credhub_ref_missing(self):
        with pytest.raises(MigrationError, match="instance guid 'si-2'"):
            find_credhub_ref(ServiceInstance(name='x', guid='si-2'))

    def test_extract_credentials(self):
        output = 'noise\n' + json.dumps({'data': [{'value': {'user': 'u'}}]}) + '\n'

        assert extract_credentials(output) == {'user': 'u'}

    def test_extract_credentials_invalid(self):
        with pytest.raises(MigrationError):
            extract_credentials('{"data": []}')
        with pytest.raises(MigrationError):
            extract_credentials('')

    def test_validate_import_requires_credentials(self):
        with pytest.raises(MigrationError, match='no credentials exported'):
            self.strategy.validate(self.instance, is_export=False)

    @pytest.mark.asyncio
    async def test_export(self):
        self.bosh.find_deployment.side_effect = find_deployment(['cf-abc123'])
        self.bosh.find_vm.return_value = VM(instance='credhub/0')
        self.bosh.ssh.return_value = json.dumps({'data': [{'value': {'password': 'p'}}]})

        exported = await self.strategy.export_instance('org', 'space', self.instance)

        assert exported.credentials == {'password': 'p'}
        self.opsman.credhub_admin_secret.assert_called_once_with('cf-abc123')
        deployment, vm, command = self.bosh.ssh.await_args.args
        assert (deployment, vm) == ('cf-abc123', 'credhub/0')
        assert 'export CREDHUB_SECRET=admin-secret' in command
        assert 'export NAME=/c/broker/si-1/creds' in command

    @pytest.mark.asyncio
    async def test_export_without_cf_deployment(self):
        self.bosh.find_deployment.return_value = None

        with pytest.raises(MigrationError, match='cf deployment not found'):
            await self.strategy.export_instance('org', 'space', self.instance)

    def test_credentials_are_the_parameters(self):
        self.instance.credentials = {'a': 'b'}

        assert self.strategy.parameters(self.instance) == {'a': 'b'}


class TestMySQLParsing:
    """Test parsing of adbr and credhub output."""

    def test_parse_backup_id(self):
        assert parse_backup_id(LIST_BACKUPS_OUTPUT) == '1637787892'

    def test_parse_backup_datetime(self):
        assert parse_backup_datetime(LIST_BACKUPS_OUTPUT) == ('2021/11/24', '21:04:52')

    def test_parse_short_output(self):
        with pytest.raises(MigrationError, match='not enough lines'):
            parse_backup_id('one line')
        with pytest.raises(MigrationError, match='output is empty'):
            parse_backup_datetime('')

    def test_parse_bad_date(self):
        output = 'a\nb\nguid_1 Wed Foo 24 21:04:52 UTC 2021\n'

        with pytest.raises(MigrationError, match="couldn't extract datetime"):
            parse_backup_datetime(output)

    def test_extract_encryption_key(self):
        assert extract_encryption_key('Setting the target\nLogin Successful\nkey-123\n\n') == (
            'key-123'
        )

    def test_check_required(self):
        with pytest.raises(MigrationError) as exc_info:
            check_required('required param %r is not set', {'a': 'x', 'b': '', 'c': ''})

        assert str(exc_info.value) == (
            "required param 'b' is not set: required param 'c' is not set"
        )


class TestMySQLStrategy:
    """Test backup and restore orchestration."""

    @pytest.fixture(autouse=True)
    def setup(self, make_context, tmp_path):
        self.tmp_path = tmp_path
        self.context = make_context()
        self.bosh = make_bosh()
        self.opsman = Mock(spec=OpsManClient)
        self.opsman.credhub_admin_secret.return_value = 'admin-secret'
        self.context.clients.source_bosh_client.return_value = self.bosh
        self.context.clients.target_bosh_client.return_value = self.bosh
        self.context.clients.source_opsman_client.return_value = self.opsman
        self.context.clients.source_cf_client().config = CloudControllerConfig(
            url='https://api.source.example.com', username='admin', password='secret'
        )
        self.scripts = []

        async def execute(lines, env=None, timeout=None):
            script = '\n'.join(lines)
            self.scripts.append((script, env))
            if 'get-status' in script:
                return CommandResult(output='Backup was successful', exit_code=0)
            if 'list-backups' in script:
                return CommandResult(output=LIST_BACKUPS_OUTPUT, exit_code=0)
            return CommandResult(output='', exit_code=0)

        self.context.executor.execute.side_effect = execute

        self.settings = MySQLSettings(
            backup_type='s3',
            backup_directory=str(tmp_path / 'backups'),
            s3={
                'endpoint': 'https://s3.example.com',
                'access_key_id': 'id',
                'secret_access_key': 'key',
                'bucket_name': 'backups',
            },
        )
        self.instance = ServiceInstance(
            name='db', guid='si-1', service='p.mysql', plan='db-small'
        )

    @pytest.mark.asyncio
    async def test_export_requires_backup_type(self):
        strategy = MySQLStrategy(self.context, MySQLSettings())

        with pytest.raises(MigrationError, match="'backup_type' is not set"):
            await strategy.export_instance('org', 'space', self.instance)

    @pytest.mark.asyncio
    async def test_export(self):
        """Test backup, download and key retrieval of an instance."""
        self.bosh.find_deployment.side_effect = find_deployment(['cf-1', 'pivotal-mysql-2'])
        self.bosh.ssh.return_value = 'Login Successful\nkey-123\n'
        strategy = MySQLStrategy(self.context, self.settings)

        exported = await strategy.export_instance('team', 'dev', self.instance)

        assert exported.backup_id == '1637787892'
        assert exported.backup_date == '2021/11/24'
        assert exported.backup_encryption_key == 'key-123'
        assert exported.backup_file == str(
            self.tmp_path / 'backups' / 'si-1' / '1637787892' / 'mysql-backup.tar.gpg'
        )

        login, login_env = self.scripts[0]
        assert 'cf target -o team -s dev' in login
        assert login_env['CF_USERNAME'] == 'admin'

        download, download_env = self.scripts[-1]
        assert (
            's3://backups/p.mysql/service-instance_si-1/2021/11/24/si-1_1637787892.tar'
            in download
        )
        assert download_env['AWS_ACCESS_KEY_ID'] == 'id'

        deployment, vm, command = self.bosh.ssh.await_args.args
        assert (deployment, vm) == ('pivotal-mysql-2', 'dedicated-mysql-broker/0')
        assert '/tanzu-mysql/backups/si-1_1637787892' in command

    @pytest.mark.asyncio
    async def test_export_backup_failed(self):
        async def execute(lines, env=None, timeout=None):
            if 'get-status' in '\n'.join(lines):
                return CommandResult(output='Backup failed', exit_code=0)
            return CommandResult(output='', exit_code=0)

        self.context.executor.execute.side_effect = execute
        strategy = MySQLStrategy(self.context, self.settings)

        with pytest.raises(MigrationError, match='adbr failed to backup instance "db"'):
            await strategy.export_instance('team', 'dev', self.instance)

    @pytest.mark.asyncio
    async def test_scp_download_requires_settings(self):
        self.settings.backup_type = 'scp'
        strategy = MySQLStrategy(self.context, self.settings)

        with pytest.raises(MigrationError, match="required param 'username' is not set"):
            await strategy.export_instance('team', 'dev', self.instance)

    def test_validate_import_requires_backup(self):
        strategy = MySQLStrategy(self.context, self.settings)

        with pytest.raises(MigrationError, match='no backup exported for db'):
            strategy.validate(self.instance, is_export=False)
        strategy.validate(self.instance, is_export=True)

    @pytest.mark.asyncio
    async def test_import_missing_backup_file(self):
        self.instance.backup_file = str(self.tmp_path / 'missing.tar.gpg')
        strategy = MySQLStrategy(self.context, self.settings)

        with pytest.raises(MigrationError, match='file does not exist'):
            await strategy.import_instance('team', 'dev', self.instance)

    @pytest.mark.asyncio
    async def test_import_restores_backup(self):
        backup = self.tmp_path / 'mysql-backup.tar.gpg'
        backup.write_text('encrypted')
        self.instance.backup_file = str(backup)
        self.instance.backup_encryption_key = 'key-123'
        client = self.context.clients.target_cf_client()
        client.get_space_by_name.return_value = {'guid': 'space-1'}
        client.get_service_instance_by_name.return_value = None
        client.find_service_plan.return_value = 'plan-1'
        client.create_service_instance.return_value = {'guid': 'new-si'}
        strategy = MySQLStrategy(self.context, self.settings)

        await strategy.import_instance('team', 'dev', self.instance)

        self.bosh.scp.assert_awaited_once_with(
            'service-instance_new-si', str(backup), 'mysql/0:/tmp'
        )
        deployment, vm, command = self.bosh.ssh.await_args.args
        assert (deployment, vm) == ('service-instance_new-si', 'mysql/0')
        assert '--encryption-key key-123' in command
        assert '--restore-file /tmp/mysql-backup.tar.gpg' in command

    @pytest.mark.asyncio
    async def test_restore_into_non_empty_instance_is_tolerated(self):
        self.bosh.ssh.side_effect = BoshError(
            'bosh -d failed',
            output='Restore is permitted only in a non-empty service instance',
        )
        strategy = MySQLStrategy(self.context, self.settings)

        await strategy._restore_backup('si-1', self.instance)

    @pytest.mark.asyncio
    async def test_restore_error_propagates(self):
        self.bosh.ssh.side_effect = BoshError('bosh -d failed', output='disk full')
        strategy = MySQLStrategy(self.context, self.settings)

        with pytest.raises(BoshError):
            await strategy._restore_backup('si-1', self.instance)


class TestCCDBStrategy:
    """Test Cloud Controller database record creation."""

    @pytest.fixture(autouse=True)
    def setup(self, make_context):
        self.context = make_context()
        self.bosh = make_bosh()
        self.context.clients.target_bosh_client.return_value = self.bosh
        self.bosh.find_deployment.side_effect = find_deployment(['cf-1'])
        self.bosh.find_vm.side_effect = lambda deployment, process: VM(
            instance=f'{process}/0', ips=['10.0.0.7']
        )
        self.client = self.context.clients.target_cf_client()
        self.client.get_space_by_name.return_value = {'guid': 'space-1'}
        self.client.get_service_instance_by_name.return_value = None
        self.instance = ServiceInstance(
            name='bucket',
            guid='si-1',
            service='ecs-bucket',
            plan='5gb',
            credentials={'endpoint': 'https://ecs.example.com'},
            service_bindings=[ServiceBinding(guid='b-1', name='web-binding')],
            service_keys=[ServiceKey(name='key-1', credentials={'k': 'v'})],
            apps={'b-1': 'web'},
        )

    def settings(self, **target) -> CCDBSettings:
        return CCDBSettings(target_ccdb=DatabaseConfig(**target))

    def test_database_config_validation(self):
        config = DatabaseConfig(db_host='h', db_username='u', db_password='p')

        with pytest.raises(FieldError, match='ccdb encryption key'):
            config.validate_config()

    def test_ssh_tunnel_needs_credentials(self):
        config = DatabaseConfig(
            db_host='h',
            db_username='u',
            db_password='p',
            db_encryption_key='k',
            ssh_tunnel=True,
            ssh_host='jump',
            ssh_username='ubuntu',
        )

        with pytest.raises(FieldError, match='ssh password or ssh private key'):
            config.validate_config()

    def test_parse_result(self):
        assert parse_result('Loading\nRESULT=abc\n=> nil\n') == 'abc'
        with pytest.raises(MigrationError):
            parse_result('no result here')

    def test_validate_checks_configured_database(self):
        strategy = ECSStrategy(self.context, self.settings(db_host='h'))

        with pytest.raises(MigrationError, match='ccdb username'):
            strategy.validate(self.instance, is_export=False)
        ECSStrategy(self.context, CCDBSettings()).validate(self.instance, is_export=False)

    @pytest.mark.asyncio
    async def test_export_downloads_app_manifests(self):
        client = self.context.clients.source_cf_client()
        client.get_app_manifest.return_value = (
            'applications:\n- name: web\n  memory: 1G\n  instances: 2\n'
        )
        self.instance.service_bindings[0].app_guid = 'app-1'

        exported = await ECSStrategy(self.context).export_instance('org', 'space', self.instance)

        assert [a.name for a in exported.app_manifest.applications] == ['web']
        assert exported.app_manifest.applications[0].instances == 2
        client.get_app_manifest.assert_awaited_once_with('app-1')

    @pytest.mark.asyncio
    async def test_export_maps_route_domains(self, make_context):
        context = make_context(domains_to_replace={'apps.source.com': 'apps.target.com'})
        client = context.clients.source_cf_client()
        client.get_app_manifest.return_value = (
            'applications:\n- name: web\n  routes:\n  - route: web.apps.source.com\n'
        )
        self.instance.service_bindings[0].app_guid = 'app-1'

        exported = await ECSStrategy(context).export_instance('org', 'space', self.instance)

        routes = exported.app_manifest.applications[0].routes
        assert [r.route for r in routes] == ['web.apps.target.com']

    @pytest.mark.asyncio
    async def test_import_rejects_existing_name(self):
        self.client.get_service_instance_by_name.return_value = {'guid': 'other'}

        with pytest.raises(MigrationError, match='service instance name "bucket" already exists'):
            await ECSStrategy(self.context).import_instance('org', 'space', self.instance)

    @pytest.mark.asyncio
    async def test_database_credentials_from_platform(self):
        """Test that unset database settings are read from BOSH and CredHub."""
        self.bosh.credhub_get.side_effect = lambda name: {
            '/p-bosh/cf-1/cc-db-credentials': {
                'value': {'username': 'ccadmin', 'password': 'ccpass'}
            },
            '/opsmgr/cf-1/cloud_controller/db_encryption_credentials': {
                'value': {'password': 'enc-key'}
            },
        }[name]
        strategy = ECSStrategy(self.context)

        database = await strategy.database_credentials(self.bosh, is_source=False)

        assert database.db_host == '10.0.0.7'
        assert database.db_username == 'ccadmin'
        assert database.db_password == 'ccpass'
        assert database.db_encryption_key == 'enc-key'
        assert strategy.settings.target_ccdb.db_host == ''

    @pytest.mark.asyncio
    async def test_import_creates_records(self):
        self.bosh.ssh.side_effect = ['RESULT=new-si', 'RESULT=app-1', 'RESULT=b-1', 'RESULT=k-1']
        strategy = ECSStrategy(
            self.context,
            self.settings(
                db_host='10.0.0.8', db_username='u', db_password='p', db_encryption_key='k'
            ),
        )

        await strategy.import_instance('org', 'space', self.instance)

        assert self.bosh.ssh.await_count == 4
        deployment, vm, command = self.bosh.ssh.await_args_list[0].args
        assert (deployment, vm) == ('cf-1', 'cloud_controller_ng/0')
        assert 'CCDB_PAYLOAD=' in command
        assert self.bosh.ssh.await_args_list[0].kwargs == {'gateway': None}

    @pytest.mark.asyncio
    async def test_import_reports_service_key_failures(self):
        self.bosh.ssh.side_effect = [
            'RESULT=new-si',
            'RESULT=app-1',
            'RESULT=b-1',
            BoshError('console crashed'),
        ]
        strategy = ECSStrategy(
            self.context,
            self.settings(
                db_host='10.0.0.8', db_username='u', db_password='p', db_encryption_key='k'
            ),
        )

        with pytest.raises(MigrationError, match='failed to create service key "key-1"'):
            await strategy.import_instance('org', 'space', self.instance)

    @pytest.mark.asyncio
    async def test_import_missing_encryption_key(self):
        self.bosh.credhub_get.return_value = {}
        strategy = ECSStrategy(
            self.context, self.settings(db_host='10.0.0.8', db_username='u', db_password='p')
        )

        with pytest.raises(MigrationError, match='ccdb encryption key is not set'):
            await strategy.import_instance('org', 'space', self.instance)
