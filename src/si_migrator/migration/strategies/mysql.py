"""Strategy for Tanzu MySQL instances, moved through ADBR backups."""

import asyncio
import os
import shlex
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ...api.exceptions import BoshError
from ...models.service_instance import ServiceInstance
from ..exceptions import MigrationError
from .credhub import CF_DEPLOYMENT_PATTERN
from .default import DefaultStrategy


SCP = 'scp'
S3 = 's3'
MINIO = 'minio'

BACKUP_FILENAME = 'mysql-backup.tar.gpg'
MYSQL_DEPLOYMENT_PATTERN = 'pivotal-mysql'
BROKER_INSTANCE = 'dedicated-mysql-broker/0'
NON_EMPTY_RESTORE = 'Restore is permitted only in a non-empty service instance'


class MinioSettings(BaseModel):
    model_config = ConfigDict(extra='ignore')

    alias: str = 'minio'
    url: str = ''
    access_key: str = ''
    secret_key: str = ''
    insecure: bool = False
    bucket_name: str = ''
    bucket_path: str = 'p.mysql'
    api: str = 'S3v4'
    path: str = 'auto'


class S3Settings(BaseModel):
    model_config = ConfigDict(extra='ignore')

    endpoint: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''
    region: str = 'us-east-1'
    bucket_name: str = ''
    bucket_path: str = 'p.mysql'
    insecure: bool = False
    force_path_style: bool = False


class SCPSettings(BaseModel):
    model_config = ConfigDict(extra='ignore')

    username: str = ''
    hostname: str = ''
    destination_directory: str = ''
    port: int = 22
    private_key: str = ''


class MySQLSettings(BaseModel):
    """Where ADBR stores backups and where they are downloaded to."""

    model_config = ConfigDict(extra='ignore')

    backup_type: str = Field(default='', description='scp, s3 or minio')
    backup_directory: str = Field(default='', description='Local download directory')
    minio: MinioSettings = Field(default_factory=MinioSettings)
    s3: S3Settings = Field(default_factory=S3Settings)
    scp: SCPSettings = Field(default_factory=SCPSettings)


def check_required(message: str, params: Dict[str, str]) -> None:
    """Raise a MigrationError naming every empty parameter.

    Args:
        message: Format string with one ``%r`` placeholder for the name
        params: Parameter names mapped to their values
    """
    missing = [message % name for name, value in params.items() if not value]
    if missing:
        raise MigrationError(': '.join(missing))


def _backup_fields(output: str) -> List[str]:
    lines = output.split('\n')
    if len(lines) < 3:
        raise MigrationError("couldn't parse backup list, not enough lines in output")
    fields = lines[2].split()
    if len(fields) < 7:
        raise MigrationError("couldn't parse backup list, not enough fields in output")
    return fields


def parse_backup_id(output: str) -> str:
    """Extract the backup id from ``cf adbr list-backups`` output."""
    if not output:
        raise MigrationError("couldn't extract backup id, output is empty")
    parts = _backup_fields(output)[0].split('_')
    if len(parts) < 2:
        raise MigrationError("couldn't extract backup id, no underscore in fields")
    return parts[1]


def parse_backup_datetime(output: str) -> Tuple[str, str]:
    """Extract the backup date and time from ``cf adbr list-backups`` output.

    The third line reads like ``<guid>_<id> Wed Nov 24 21:04:52 UTC 2021 ...``.

    Returns:
        Date as ``YYYY/MM/DD`` and time as ``HH:MM:SS``
    """
    if not output:
        raise MigrationError("couldn't extract datetime, output is empty")
    fields = _backup_fields(output)
    try:
        stamp = f'{fields[6]}-{fields[2]}-{int(fields[3]):02d} {fields[4]}'
        moment = datetime.strptime(stamp, '%Y-%b-%d %H:%M:%S')
    except ValueError as e:
        raise MigrationError(f"couldn't extract datetime: {e}")
    return moment.strftime('%Y/%m/%d'), moment.strftime('%H:%M:%S')


def extract_encryption_key(output: str) -> str:
    """Return the encryption key printed last by ``credhub get -q``."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        raise MigrationError("couldn't extract encryption key, output is empty")
    return lines[-1]


class MySQLStrategy(DefaultStrategy):
    """Backs up the source database with ADBR and restores it on the target."""

    name = 'mysql'
    settings_model = MySQLSettings

    backup_timeout = 30 * 60
    backup_poll_interval = 10

    async def export_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        settings: MySQLSettings = self.settings
        if not settings.backup_type:
            raise MigrationError("required property 'backup_type' is not set")

        with tempfile.TemporaryDirectory(prefix=f'{instance.guid}-') as cf_home:
            await self._login(cf_home, org, space)
            await self._cf(
                cf_home, 'install-plugin -r CF-Community "ApplicationDataBackupRestore" -f'
            )
            self.logger.info(f'Creating backup of {instance.name}')
            await self._cf(cf_home, f'adbr backup {shlex.quote(instance.name)}')
            await self._wait_for_backup(cf_home, instance)
            listing = await self._cf(
                cf_home, f'adbr list-backups {shlex.quote(instance.name)} -l 1'
            )

        instance.backup_date, instance.backup_time = parse_backup_datetime(listing)
        instance.backup_id = parse_backup_id(listing)
        self.logger.debug(
            f'backup_date: {instance.backup_date}, backup_time: {instance.backup_time}, '
            f'backup_id: {instance.backup_id}'
        )

        await self._download_backup(instance)
        instance.backup_encryption_key = await self._retrieve_encryption_key(instance)
        return instance

    def validate(self, instance: ServiceInstance, is_export: bool) -> None:
        if is_export:
            return
        if not instance.backup_file:
            raise MigrationError(
                f'no backup exported for {instance.name}', instance=instance.name
            )

    async def import_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        if not os.path.exists(instance.backup_file):
            raise MigrationError(
                f'failed to transfer backup: "{instance.backup_file}", file does not exist'
            )

        client = self.context.clients.target_cf_client()
        space_guid = await self.target_space_guid(client, org, space)
        self.rewrite_domains(instance)

        existing = await client.get_service_instance_by_name(space_guid, instance.name)
        if existing:
            guid = existing['guid']
        else:
            self.logger.info(f'Creating service instance {instance.name}')
            guid = (await self.create_instance(client, space_guid, instance)).get('guid', '')

        await self._restore_backup(guid, instance)
        await self.recreate_bindings(client, space_guid, guid, instance)
        if not self.context.ignore_service_keys:
            await self.recreate_service_keys(client, guid, instance)
        return instance

    async def _login(self, cf_home: str, org: str, space: str) -> None:
        client = self.context.clients.source_cf_client()
        env = {
            'CF_HOME': cf_home,
            'CF_USERNAME': client.config.username,
            'CF_PASSWORD': client.config.password,
        }
        lines = [
            f'cf api {shlex.quote(client.config.url)} --skip-ssl-validation',
            'cf auth',
            f'cf target -o {shlex.quote(org)} -s {shlex.quote(space)}',
        ]
        self.logger.info('Logging into source foundation')
        await self.context.executor.execute(lines, env=env)

    async def _cf(self, cf_home: str, command: str) -> str:
        result = await self.context.executor.execute(
            [f'cf {command}'], env={'CF_HOME': cf_home}
        )
        return result.output

    async def _wait_for_backup(self, cf_home: str, instance: ServiceInstance) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.backup_timeout
        command = f'adbr get-status {shlex.quote(instance.name)}'

        while True:
            output = await self._cf(cf_home, command)
            if 'Backup was successful' in output:
                return
            if 'Backup failed' in output:
                raise MigrationError(f'adbr failed to backup instance "{instance.name}"')
            if loop.time() > deadline:
                raise MigrationError(f'timed out waiting for backup of "{instance.name}"')
            await asyncio.sleep(self.backup_poll_interval)

    def _backup_paths(self, instance: ServiceInstance) -> Tuple[str, str, str]:
        """Return the download directory, archive name and extraction directory."""
        settings: MySQLSettings = self.settings
        download_dir = settings.backup_directory or self.context.config.export_dir
        archive = f'{instance.guid}_{instance.backup_id}.tar'
        backup_dir = str(Path(download_dir) / instance.guid / instance.backup_id)
        return download_dir, archive, backup_dir

    def _remote_key(self, bucket_path: str, instance: ServiceInstance) -> str:
        return (
            f'{bucket_path}/service-instance_{instance.guid}/'
            f'{instance.backup_date}/{instance.guid}_{instance.backup_id}.tar'
        )

    async def _download_backup(self, instance: ServiceInstance) -> None:
        settings: MySQLSettings = self.settings
        download_dir, archive, backup_dir = self._backup_paths(instance)
        self.logger.info(f'Downloading latest backup to "{download_dir}"')

        env: Optional[Dict[str, str]] = None
        if settings.backup_type == SCP:
            lines = self._scp_lines(settings.scp, instance, download_dir)
        elif settings.backup_type == S3:
            lines, env = self._s3_lines(settings.s3, instance, download_dir)
        elif settings.backup_type == MINIO:
            lines = self._minio_lines(settings.minio, instance, download_dir)
        else:
            raise MigrationError(f"unknown backup_type '{settings.backup_type}'")

        instance.backup_file = str(Path(backup_dir) / BACKUP_FILENAME)
        archive_path = shlex.quote(str(Path(download_dir) / archive))
        lines = (
            [f'mkdir -p {shlex.quote(backup_dir)}']
            + lines
            + [
                f'tar xvf {archive_path} -C {shlex.quote(backup_dir)}',
                f'mv {shlex.quote(backup_dir)}/*.tar.gpg {shlex.quote(instance.backup_file)}',
                f'rm -f {archive_path}',
            ]
        )
        await self.context.executor.execute(lines, env=env)

    def _scp_lines(
        self, scp: SCPSettings, instance: ServiceInstance, download_dir: str
    ) -> List[str]:
        check_required(
            'required param %r is not set for scp backup',
            {
                'username': scp.username,
                'hostname': scp.hostname,
                'destination directory': scp.destination_directory,
                'private key': scp.private_key,
            },
        )
        source = f'{scp.username}@{scp.hostname}:' + self._remote_key(
            f'{scp.destination_directory}/p.mysql', instance
        )
        return [
            f'scp -i {shlex.quote(scp.private_key)} -P {scp.port} '
            f'{shlex.quote(source)} {shlex.quote(download_dir)}'
        ]

    def _s3_lines(
        self, s3: S3Settings, instance: ServiceInstance, download_dir: str
    ) -> Tuple[List[str], Dict[str, str]]:
        check_required(
            'required param %r is not set for s3 backup',
            {
                'endpoint': s3.endpoint,
                'access key id': s3.access_key_id,
                'secret access key': s3.secret_access_key,
                'bucket name': s3.bucket_name,
                'bucket path': s3.bucket_path,
                'region': s3.region,
            },
        )
        env = {
            'AWS_ACCESS_KEY_ID': s3.access_key_id,
            'AWS_SECRET_ACCESS_KEY': s3.secret_access_key,
            'AWS_DEFAULT_REGION': s3.region,
        }
        source = f's3://{s3.bucket_name}/' + self._remote_key(s3.bucket_path, instance)
        command = (
            f'aws s3 cp --endpoint-url {shlex.quote(s3.endpoint)} '
            f'{shlex.quote(source)} {shlex.quote(download_dir)}/'
        )
        if s3.insecure:
            command += ' --no-verify-ssl'
        return [command], env

    def _minio_lines(
        self, minio: MinioSettings, instance: ServiceInstance, download_dir: str
    ) -> List[str]:
        check_required(
            'required param %r is not set for minio backup',
            {
                'url': minio.url,
                'access key': minio.access_key,
                'secret key': minio.secret_key,
                'bucket name': minio.bucket_name,
                'bucket path': minio.bucket_path,
            },
        )
        insecure = ' --insecure' if minio.insecure else ''
        source = f'{minio.alias}/{minio.bucket_name}/' + self._remote_key(
            minio.bucket_path, instance
        )
        return [
            f'mc alias{insecure} set {shlex.quote(minio.alias)} {shlex.quote(minio.url)} '
            f'{shlex.quote(minio.access_key)} {shlex.quote(minio.secret_key)} '
            f'--api {shlex.quote(minio.api)} --path {shlex.quote(minio.path)}',
            f'mc cp -q{insecure} {shlex.quote(source)} {shlex.quote(download_dir)}',
        ]

    async def _retrieve_encryption_key(self, instance: ServiceInstance) -> str:
        self.logger.info('Retrieving encryption key')
        check_required(
            'missing required param: %r is not set',
            {'instance guid': instance.guid, 'instance backup id': instance.backup_id},
        )
        bosh = self.context.clients.source_bosh_client()
        opsman = self.context.clients.source_opsman_client()

        cf_deployment = await bosh.find_deployment(CF_DEPLOYMENT_PATTERN)
        if cf_deployment is None:
            raise MigrationError('cf deployment not found')
        secret = await asyncio.to_thread(opsman.credhub_admin_secret, cf_deployment.name)

        mysql_deployment = await bosh.find_deployment(MYSQL_DEPLOYMENT_PATTERN)
        if mysql_deployment is None:
            raise MigrationError('pivotal-mysql deployment not found')

        credhub = '/var/vcap/packages/credhub-cli/bin/credhub'
        command = ' && '.join(
            [
                f'{credhub} api https://credhub.service.cf.internal:8844 '
                '--ca-cert /var/vcap/jobs/adbr-api/config/credhub_ca.pem',
                f'{credhub} login --client-name credhub_admin_client '
                f'--client-secret {shlex.quote(secret)}',
                f'{credhub} get -n /tanzu-mysql/backups/'
                f'{instance.guid}_{instance.backup_id} -q',
            ]
        )
        self.logger.debug(f'Getting encryption key from {mysql_deployment.name}')
        output = await bosh.ssh(mysql_deployment.name, BROKER_INSTANCE, command)
        return extract_encryption_key(output)

    async def _restore_backup(self, guid: str, instance: ServiceInstance) -> None:
        bosh = self.context.clients.target_bosh_client()
        deployment = f'service-instance_{guid}'
        restore_file = f'/tmp/{os.path.basename(instance.backup_file)}'

        self.logger.info(f'Transferring backup to {deployment}')
        await bosh.scp(deployment, instance.backup_file, 'mysql/0:/tmp')

        self.logger.info(f'Restoring backup on {deployment}')
        command = (
            f'sudo mysql-restore --encryption-key '
            f'{shlex.quote(instance.backup_encryption_key)} '
            f'--restore-file {shlex.quote(restore_file)}'
        )
        try:
            await bosh.ssh(deployment, 'mysql/0', command)
        except BoshError as e:
            if NON_EMPTY_RESTORE not in e.output:
                raise
            self.logger.warning(
                'failed to restore backup, restore is permitted only in an empty service instance'
            )
