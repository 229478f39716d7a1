"""BOSH director access through the bosh and credhub command line tools."""

import json
import re
import shlex
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from loguru import logger
from pydantic import BaseModel, Field

from ..config.config import BoshConfig
from ..utils.shell import CommandError, ShellExecutor
from .exceptions import AuthenticationError, BoshError


class VM(BaseModel):
    """VM of a BOSH deployment."""

    instance: str = Field(..., description='instance_group/id')
    process_state: str = Field(default='', description='Aggregated process state')
    ips: List[str] = Field(default_factory=list, description='VM IP addresses')
    processes: List[str] = Field(default_factory=list, description='Running processes')


class Deployment(BaseModel):
    name: str
    release_names: List[str] = Field(default_factory=list)


class Gateway(BaseModel):
    """SSH jump host for bosh ssh."""

    host: str
    user: str
    private_key_path: str = ''

    def args(self) -> List[str]:
        args = ['--gw-host', self.host, '--gw-user', self.user]
        if self.private_key_path:
            args += ['--gw-private-key', self.private_key_path]
        return args


class BoshClient:
    """BOSH client bound to one director, its credentials and its proxy."""

    def __init__(self, config: BoshConfig, executor: ShellExecutor):
        """Initialize BOSH client.

        Args:
            config: Director settings, already validated
            executor: Shell executor used to run the bosh CLI
        """
        self.config = config
        self.executor = executor
        self.env = self._build_env(config)
        self.logger = logger.bind(component='BoshClient')

    @staticmethod
    def _build_env(config: BoshConfig) -> Dict[str, str]:
        auth = config.authentication
        if auth.basic.is_set():
            client, secret = auth.basic.username, auth.basic.password
        elif auth.uaa.client_credentials.is_set():
            client = auth.uaa.client_credentials.client_id
            secret = auth.uaa.client_credentials.client_secret
        else:
            client = auth.uaa.user_credentials.username
            secret = auth.uaa.user_credentials.password

        director_host = urlparse(config.url).hostname or config.url
        env = {
            'BOSH_ENVIRONMENT': config.url,
            'BOSH_CLIENT': client,
            'BOSH_CLIENT_SECRET': secret,
            'BOSH_ALL_PROXY': config.all_proxy,
            'BOSH_NON_INTERACTIVE': 'true',
            'CREDHUB_SERVER': f'https://{director_host}:8844',
            'CREDHUB_CLIENT': client,
            'CREDHUB_SECRET': secret,
            'CREDHUB_PROXY': config.all_proxy,
        }
        if config.root_ca_cert:
            env['BOSH_CA_CERT'] = config.root_ca_cert
            env['CREDHUB_CA_CERT'] = config.root_ca_cert
        return env

    async def run(self, *args: str) -> str:
        """Run a bosh command and return its standard output.

        Raises:
            BoshError: If the command fails
        """
        line = 'bosh ' + ' '.join(shlex.quote(a) for a in args)
        try:
            result = await self.executor.execute([line], env=self.env)
        except CommandError as e:
            output = e.result.output if e.result else ''
            raise BoshError(f'bosh {args[0] if args else ""} failed: {e}', output=output)
        return result.output

    async def run_json(self, *args: str) -> List[Dict[str, Any]]:
        """Run a bosh command with --json and return the first table's rows."""
        output = await self.run('--json', *args)
        if not output:
            return []
        try:
            tables = json.loads(output).get('Tables') or []
        except ValueError as e:
            raise BoshError(f'could not parse bosh output: {e}')
        return tables[0].get('Rows', []) if tables else []

    async def verify_auth(self) -> None:
        """Check that the director accepts the configured credentials.

        Raises:
            AuthenticationError: If the director reports no logged in user
        """
        output = await self.run('--json', 'env')
        if not output:
            return
        try:
            rows = json.loads(output)['Tables'][0]['Rows']
        except (ValueError, KeyError, IndexError) as e:
            raise BoshError(f'could not parse bosh env output: {e}')
        user = rows[0].get('user', '') if rows else ''
        if not user or 'not logged in' in user:
            raise AuthenticationError(f'not logged in to bosh director {self.config.url}')

    async def find_deployment(self, pattern: str) -> Optional[Deployment]:
        """Find the first deployment whose name matches a regex."""
        regex = re.compile(pattern)
        for row in await self.run_json('deployments'):
            name = row.get('name', '')
            if regex.search(name):
                releases = [r for r in row.get('release_s', '').split('\n') if r]
                return Deployment(name=name, release_names=releases)
        return None

    async def find_vm(self, deployment: str, process: str) -> Optional[VM]:
        """Find a VM of the deployment running the named process.

        Args:
            deployment: Deployment name
            process: Process (job) name, e.g. ``proxy``

        Returns:
            The first matching VM, or None
        """
        rows = await self.run_json('-d', deployment, 'instances', '--ps', '--details')

        current = None
        for row in rows:
            if row.get('instance'):
                current = VM(
                    instance=row['instance'],
                    process_state=row.get('process_state', ''),
                    ips=[ip for ip in row.get('ips', '').split('\n') if ip],
                )
            if current is None:
                continue
            name = row.get('process', '')
            if name:
                current.processes.append(name)
            if name == process:
                self.logger.debug(f'Found process {process} on {current.instance}')
                return current
        return None

    async def ssh(
        self,
        deployment: str,
        instance: str,
        command: str,
        gateway: Optional[Gateway] = None,
    ) -> str:
        """Run a command on a deployment VM and return the output.

        Args:
            deployment: Deployment name
            instance: Instance, e.g. ``mysql/0``
            command: Command run on the VM
            gateway: Jump host the connection is tunneled through
        """
        args = ['-d', deployment, 'ssh', instance, '-r', '--column=stdout']
        if gateway:
            args += gateway.args()
        return await self.run(*args, '-c', command)

    async def scp(self, deployment: str, source: str, destination: str) -> str:
        """Copy a file to or from a deployment VM."""
        return await self.run('-d', deployment, 'scp', source, destination)

    async def credhub_get(self, name: str) -> Dict[str, Any]:
        """Read a credential from the director's CredHub."""
        line = f'credhub get -n {shlex.quote(name)} -j'
        try:
            result = await self.executor.execute([line], env=self.env)
        except CommandError as e:
            raise BoshError(f'failed to read credhub credential {name}: {e}')
        if not result.output:
            return {}
        return json.loads(result.output)


class BoshClientFactory:
    """Factory for creating BOSH clients."""

    @staticmethod
    def create_client(config: BoshConfig, executor: ShellExecutor) -> BoshClient:
        """Create a BOSH client from validated configuration.

        Raises:
            ConfigurationError: If the director settings are invalid
        """
        config.validate_config()
        return BoshClient(config, executor)
