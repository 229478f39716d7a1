"""Service instance interchange models."""

from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


MANAGED_SERVICE_INSTANCE = 'managed_service_instance'
USER_PROVIDED_SERVICE_INSTANCE = 'user_provided_service_instance'


class ServiceBinding(BaseModel):
    """Binding of a service instance to an application."""

    model_config = ConfigDict(extra='ignore')

    guid: str = Field(default='', description='Binding GUID')
    name: str = Field(default='', description='Binding name')
    app_guid: str = Field(default='', description='Bound application GUID')
    service_instance_guid: str = Field(default='', description='Service instance GUID')
    credentials: Dict[str, Any] = Field(
        default_factory=dict, description='Binding credentials'
    )
    binding_options: Optional[Any] = Field(default=None, description='Binding parameters')
    syslog_drain_url: str = Field(default='', description='Syslog drain URL')
    volume_mounts: Optional[Any] = Field(default=None, description='Volume mounts')


class ServiceKey(BaseModel):
    """Service key of a service instance."""

    model_config = ConfigDict(extra='ignore')

    name: str = Field(default='', description='Key name')
    guid: str = Field(default='', description='Key GUID')
    service_instance_guid: str = Field(default='', description='Service instance GUID')
    credentials: Dict[str, Any] = Field(default_factory=dict, description='Key credentials')


class Route(BaseModel):
    route: str = ''


class Application(BaseModel):
    """Application manifest entry."""

    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    name: str = Field(default='', description='Application name')
    buildpacks: List[str] = Field(default_factory=list)
    command: str = ''
    disk_quota: str = ''
    env: Dict[str, Any] = Field(default_factory=dict)
    health_check_type: str = Field(default='', alias='health-check-type')
    instances: int = 1
    memory: str = ''
    no_route: bool = Field(default=False, alias='no-route')
    routes: List[Route] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
    stack: str = ''


class AppManifest(BaseModel):
    """Manifest holding one or more applications."""

    applications: List[Application] = Field(default_factory=list)


class ServiceInstance(BaseModel):
    """Service instance as exported to, and imported from, disk."""

    model_config = ConfigDict(extra='ignore')

    name: str = Field(default='', description='Service instance name')
    guid: str = Field(default='', description='Service instance GUID')
    type: str = Field(default='', description='Managed or user provided')
    tags: str = Field(default='', description='Comma separated tags')
    params: Dict[str, Any] = Field(default_factory=dict, description='Instance parameters')
    route_service_url: str = Field(default='', description='Route service URL')
    syslog_drain_url: str = Field(default='', description='Syslog drain URL')
    dashboard_url: str = Field(default='', description='Dashboard URL')
    service: str = Field(default='', description='Service offering name')
    plan: str = Field(default='', description='Service plan name')
    credentials: Dict[str, Any] = Field(
        default_factory=dict, description='User provided or exported credentials'
    )
    service_bindings: List[ServiceBinding] = Field(default_factory=list)
    service_keys: List[ServiceKey] = Field(default_factory=list)

    # Data transfer artifacts
    backup_id: str = Field(default='', description='Backup identifier')
    backup_date: str = Field(default='', description='Backup date')
    backup_time: str = Field(default='', description='Backup time')
    backup_file: str = Field(default='', description='Backup file name')
    backup_encryption_key: str = Field(default='', description='Backup encryption key')

    apps: Dict[str, str] = Field(
        default_factory=dict, description='Binding GUID to application name'
    )
    app_manifest: AppManifest = Field(default_factory=AppManifest)

    @field_validator('tags', mode='before')
    @classmethod
    def validate_tags(cls, v):
        """Accept tags as a list and store them comma joined."""
        if v is None:
            return ''
        if isinstance(v, (list, tuple)):
            return ','.join(str(t) for t in v)
        return v

    @field_validator('params', 'credentials', 'apps', mode='before')
    @classmethod
    def validate_mapping(cls, v):
        return v or {}

    @property
    def is_user_provided(self) -> bool:
        return self.type == USER_PROVIDED_SERVICE_INSTANCE

    def tag_list(self) -> List[str]:
        return [t.strip() for t in self.tags.split(',') if t.strip()]

    def to_manifest(self) -> Dict[str, Any]:
        """Return the YAML-ready representation without empty values."""
        data = self.model_dump(exclude_defaults=True, by_alias=True)
        data.setdefault('app_manifest', {'applications': []})
        return data
