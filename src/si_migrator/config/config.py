"""Configuration management for the service instance migrator."""

from typing import Optional, Dict, Any, List
from pathlib import Path
import os

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import yaml
from dotenv import load_dotenv


class ConfigurationError(Exception):
    """Raised when configuration is missing or inconsistent."""

    pass


class FieldError(ConfigurationError):
    """Configuration error attached to a single field."""

    def __init__(self, field: str, message: str):
        """Initialize field error.

        Args:
            field: Name of the offending field
            message: Description of the problem
        """
        super().__init__(f'{field} {message}')
        self.field = field
        self.message = message


class OpsManagerConfig(BaseModel):
    """Ops Manager that fronts one foundation."""

    url: str = Field(default='', description='Ops Manager URL')
    username: str = Field(default='', description='Ops Manager username')
    password: str = Field(default='', description='Ops Manager password')
    client_id: str = Field(default='', description='Ops Manager client id')
    client_secret: str = Field(default='', description='Ops Manager client secret')
    hostname: str = Field(default='', description='Ops Manager VM hostname')
    ip: str = Field(default='', description='Ops Manager VM IP address')
    private_key: str = Field(default='', description='Path to the SSH private key')
    ssh_user: str = Field(default='ubuntu', description='SSH user for the Ops Manager VM')

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Normalize Ops Manager URL."""
        if v and not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    def is_set(self) -> bool:
        """Return True when the foundation has been configured at all."""
        return bool(self.url)

    def validate_auth(self) -> None:
        """Validate that the Ops Manager can be authenticated against.

        Raises:
            FieldError: If a required credential is missing
        """
        if not self.url:
            raise FieldError('url', "can't be empty")
        if not self.username and not self.client_id:
            raise FieldError('username or client_id', "can't be empty")
        if not self.password and not self.client_secret:
            raise FieldError('password or client_secret', "can't be empty")

    def validate_ssh(self) -> None:
        """Validate that the Ops Manager VM can be reached over SSH.

        Raises:
            FieldError: If a required SSH setting is missing
        """
        if not self.ssh_user:
            raise FieldError('ssh_user', "can't be empty")
        if not self.hostname and not self.ip:
            raise FieldError('hostname', "can't be empty")
        if not self.private_key:
            raise FieldError('private_key', "can't be empty")

    @property
    def ssh_host(self) -> str:
        return self.hostname or self.ip

    def all_proxy_url(self) -> str:
        """Build the SOCKS-over-SSH proxy URL used to reach BOSH managed VMs."""
        self.validate_ssh()
        return (
            f'ssh+socks5://{self.ssh_user}@{self.ssh_host}:22'
            f'?private-key={self.private_key}'
        )


class FoundationsConfig(BaseModel):
    """Source and target foundations."""

    source: OpsManagerConfig = Field(default_factory=OpsManagerConfig)
    target: OpsManagerConfig = Field(default_factory=OpsManagerConfig)


class CloudControllerConfig(BaseModel):
    """Cloud Controller API endpoint and credentials."""

    url: str = Field(default='', description='CF API URL')
    username: str = Field(default='', description='UAA username')
    password: str = Field(default='', description='UAA password')
    client_id: str = Field(default='', description='UAA client id')
    client_secret: str = Field(default='', description='UAA client secret')
    skip_ssl_validation: bool = Field(default=True, description='Skip TLS verification')
    timeout: int = Field(default=60, description='Request timeout in seconds')

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Normalize CF API URL."""
        if v and not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    def is_set(self) -> bool:
        return bool(self.url)

    def validate_auth(self) -> None:
        """Validate that the API can be authenticated against.

        Raises:
            FieldError: If a required credential is missing
        """
        if not self.url:
            raise FieldError('url', "can't be empty")
        if not self.username and not self.client_id:
            raise FieldError('username or client_id', "can't be empty")
        if not self.password and not self.client_secret:
            raise FieldError('password or client_secret', "can't be empty")


class BasicAuth(BaseModel):
    username: str = ''
    password: str = ''

    def is_set(self) -> bool:
        return bool(self.username or self.password)


class ClientCredentials(BaseModel):
    client_id: str = ''
    client_secret: str = ''

    def is_set(self) -> bool:
        return bool(self.client_id or self.client_secret)


class UserCredentials(BaseModel):
    username: str = ''
    password: str = ''

    def is_set(self) -> bool:
        return bool(self.username or self.password)


class UAAAuth(BaseModel):
    """UAA authentication settings."""

    url: str = ''
    client_credentials: ClientCredentials = Field(default_factory=ClientCredentials)
    user_credentials: UserCredentials = Field(default_factory=UserCredentials)

    def is_set(self) -> bool:
        return bool(
            self.url
            or self.client_credentials.is_set()
            or self.user_credentials.is_set()
        )


class Authentication(BaseModel):
    """Either basic or UAA authentication, never both."""

    basic: BasicAuth = Field(default_factory=BasicAuth)
    uaa: UAAAuth = Field(default_factory=UAAAuth)

    def is_set(self) -> bool:
        return self.basic.is_set() or self.uaa.is_set()

    def validate_auth(self, url_required: bool = True) -> None:
        """Validate the authentication block.

        Args:
            url_required: Whether the UAA URL must be present

        Raises:
            ConfigurationError: If zero or both auth types are set, or the
                chosen type is incomplete
        """
        basic_set = self.basic.is_set()
        uaa_set = self.uaa.is_set()

        if not basic_set and not uaa_set:
            raise ConfigurationError('must specify an authentication type')
        if basic_set and uaa_set:
            raise ConfigurationError('cannot specify both basic and UAA authentication')

        if basic_set:
            if not self.basic.username:
                raise FieldError('username', "can't be empty")
            if not self.basic.password:
                raise FieldError('password', "can't be empty")
            return

        if url_required and not self.uaa.url:
            raise FieldError('url', "can't be empty")

        client_set = self.uaa.client_credentials.is_set()
        user_set = self.uaa.user_credentials.is_set()
        if not client_set and not user_set:
            raise ConfigurationError(
                'authentication should contain either user_credentials or client_credentials'
            )
        if client_set and user_set:
            raise ConfigurationError('contains both client and user credentials')

        if client_set:
            if not self.uaa.client_credentials.client_id:
                raise FieldError('client_id', "can't be empty")
            if not self.uaa.client_credentials.client_secret:
                raise FieldError('client_secret', "can't be empty")
        else:
            if not self.uaa.user_credentials.username:
                raise FieldError('username', "can't be empty")
            if not self.uaa.user_credentials.password:
                raise FieldError('password', "can't be empty")


class BoshConfig(BaseModel):
    """BOSH director endpoint for one foundation."""

    url: str = Field(default='', description='BOSH director URL')
    all_proxy: str = Field(default='', description='BOSH_ALL_PROXY value')
    root_ca_cert: str = Field(default='', description='Director CA certificate (PEM)')
    authentication: Authentication = Field(default_factory=Authentication)
    deployment: str = Field(default='', description='CF deployment name')

    def is_set(self) -> bool:
        return bool(self.url or self.authentication.is_set())

    def validate_config(self) -> None:
        """Validate the director settings and their authentication.

        Raises:
            ConfigurationError: If any setting is missing or inconsistent
        """
        if not self.url:
            raise FieldError('url', "can't be empty")
        if not self.all_proxy:
            raise FieldError('all_proxy', "can't be empty")
        self.authentication.validate_auth(url_required=True)


class MigratorEntry(BaseModel):
    """One strategy configuration entry, keyed by migrator name."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description='Migrator or service offering name')
    value: Dict[str, Any] = Field(
        default_factory=dict,
        alias='migrator',
        description='Strategy specific settings',
    )

    @field_validator('value', mode='before')
    @classmethod
    def validate_value(cls, v):
        """Treat an empty migrator block as no settings."""
        return v or {}


class MigrationSection(BaseModel):
    """Strategy definitions."""

    use_default_migrator: bool = Field(
        default=True, description='Recreate unknown service types through the CF API'
    )
    migrators: List[MigratorEntry] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Log format')

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


def _default_export_dir() -> str:
    return str(Path.cwd() / 'export')


class Config(BaseModel):
    """Main configuration class for the service instance migrator."""

    model_config = ConfigDict(extra='forbid')

    debug: bool = Field(default=False, description='Enable debug output')
    dry_run: bool = Field(default=False, description='Print actions without performing them')
    non_interactive: bool = Field(default=False, description='Never prompt')

    export_dir: str = Field(
        default_factory=_default_export_dir, description='Export/import root directory'
    )
    domains_to_replace: Dict[str, str] = Field(
        default_factory=dict, description='Source to target domain mapping'
    )
    include_orgs: List[str] = Field(default_factory=list, description='Org regexes to include')
    exclude_orgs: List[str] = Field(default_factory=list, description='Org regexes to exclude')
    services: List[str] = Field(default_factory=list, description='Service types to migrate')
    instances: List[str] = Field(default_factory=list, description='Instance names to migrate')
    ignore_service_keys: bool = Field(default=False, description='Do not recreate service keys')

    max_workers: int = Field(default=1, description='Concurrent instances per space')
    command_timeout: int = Field(
        default=1200, description='Timeout for external commands in seconds'
    )

    foundations: FoundationsConfig = Field(default_factory=FoundationsConfig)
    source_api: CloudControllerConfig = Field(default_factory=CloudControllerConfig)
    target_api: CloudControllerConfig = Field(default_factory=CloudControllerConfig)
    source_bosh: BoshConfig = Field(default_factory=BoshConfig)
    target_bosh: BoshConfig = Field(default_factory=BoshConfig)
    migration: MigrationSection = Field(default_factory=MigrationSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('max_workers')
    @classmethod
    def validate_max_workers(cls, v):
        """Validate max workers is positive."""
        if v <= 0:
            raise ValueError('Max workers must be positive')
        return v

    @field_validator('command_timeout')
    @classmethod
    def validate_command_timeout(cls, v):
        """Validate command timeout is not negative."""
        if v < 0:
            raise ValueError('Command timeout cannot be negative')
        return v

    @model_validator(mode='after')
    def validate_foundations(self):
        """Validate configured foundations and BOSH directors."""
        for foundation in (self.foundations.source, self.foundations.target):
            if foundation.is_set():
                foundation.validate_auth()
        for bosh in (self.source_bosh, self.target_bosh):
            if bosh.is_set():
                bosh.validate_config()
        return self

    def foundation(self, is_source: bool) -> OpsManagerConfig:
        return self.foundations.source if is_source else self.foundations.target

    def cf_api(self, is_source: bool) -> CloudControllerConfig:
        return self.source_api if is_source else self.target_api

    def bosh(self, is_source: bool) -> BoshConfig:
        return self.source_bosh if is_source else self.target_bosh

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        # Load .env file if it exists
        load_dotenv()

        config_data = {
            'debug': _env_flag('SI_MIGRATOR_DEBUG'),
            'dry_run': _env_flag('SI_MIGRATOR_DRY_RUN'),
            'export_dir': os.getenv('SI_MIGRATOR_EXPORT_DIR'),
            'foundations': {
                'source': _foundation_from_env('SOURCE'),
                'target': _foundation_from_env('TARGET'),
            },
            'source_api': {
                'url': os.getenv('SOURCE_CF_API'),
                'username': os.getenv('SOURCE_CF_USERNAME'),
                'password': os.getenv('SOURCE_CF_PASSWORD'),
                'client_id': os.getenv('SOURCE_CF_CLIENT_ID'),
                'client_secret': os.getenv('SOURCE_CF_CLIENT_SECRET'),
            },
            'target_api': {
                'url': os.getenv('TARGET_CF_API'),
                'username': os.getenv('TARGET_CF_USERNAME'),
                'password': os.getenv('TARGET_CF_PASSWORD'),
                'client_id': os.getenv('TARGET_CF_CLIENT_ID'),
                'client_secret': os.getenv('TARGET_CF_CLIENT_SECRET'),
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        if os.getenv('SI_MIGRATOR_COMMAND_TIMEOUT'):
            config_data['command_timeout'] = int(os.getenv('SI_MIGRATOR_COMMAND_TIMEOUT'))

        # Remove None values
        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    def to_file(self, config_path: str) -> None:
        """Save configuration to YAML file."""
        config_file = Path(config_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                self.model_dump(by_alias=True),
                f,
                default_flow_style=False,
                indent=2,
                sort_keys=False,
            )

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'debug': False,
            'dry_run': False,
            'export_dir': './export',
            'exclude_orgs': ['^system$', '^p-'],
            'include_orgs': [],
            'domains_to_replace': {'apps.source.example.com': 'apps.target.example.com'},
            'ignore_service_keys': False,
            'max_workers': 1,
            'command_timeout': 1200,
            'foundations': {
                'source': {
                    'url': 'https://opsman.source.example.com',
                    'client_id': 'your-source-client-id',
                    'client_secret': 'your-source-client-secret',
                    'hostname': 'opsman.source.example.com',
                    'private_key': '/path/to/source/opsman.pem',
                    'ssh_user': 'ubuntu',
                },
                'target': {
                    'url': 'https://opsman.target.example.com',
                    'client_id': 'your-target-client-id',
                    'client_secret': 'your-target-client-secret',
                    'hostname': 'opsman.target.example.com',
                    'private_key': '/path/to/target/opsman.pem',
                    'ssh_user': 'ubuntu',
                },
            },
            'migration': {
                'use_default_migrator': True,
                'migrators': [
                    {
                        'name': 'mysql',
                        'migrator': {
                            'backup_type': 's3',
                            'backup_directory': '/tmp',
                            's3': {
                                'endpoint': 'https://s3.amazonaws.com',
                                'access_key_id': 'your-access-key-id',
                                'secret_access_key': 'your-secret-access-key',
                                'region': 'us-east-1',
                                'bucket_name': 'mysql-backups',
                                'bucket_path': 'p.mysql',
                            },
                        },
                    },
                    {'name': 'credhub', 'migrator': {}},
                    {'name': 'ecs', 'migrator': {}},
                    {'name': 'sqlserver', 'migrator': {}},
                ],
            },
            'logging': {
                'level': 'INFO',
                'file': 'si-migrator.log',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.lower() in ('1', 'true', 'yes')


def _foundation_from_env(prefix: str) -> Dict[str, Optional[str]]:
    return {
        'url': os.getenv(f'{prefix}_OM_TARGET'),
        'username': os.getenv(f'{prefix}_OM_USERNAME'),
        'password': os.getenv(f'{prefix}_OM_PASSWORD'),
        'client_id': os.getenv(f'{prefix}_OM_CLIENT_ID'),
        'client_secret': os.getenv(f'{prefix}_OM_CLIENT_SECRET'),
        'hostname': os.getenv(f'{prefix}_OM_HOSTNAME'),
        'ip': os.getenv(f'{prefix}_OM_IP'),
        'private_key': os.getenv(f'{prefix}_OM_PRIVATE_KEY'),
        'ssh_user': os.getenv(f'{prefix}_OM_SSH_USER'),
    }
