"""Migration strategy interfaces and shared helpers."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from ..api.cf_client import CFClient
from ..api.exceptions import OrganizationNotFoundError
from ..config.config import Config
from ..io.parser import ManifestParser
from ..models.service_instance import AppManifest, ServiceInstance
from ..utils.shell import ShellExecutor
from .clients import ClientHolder
from .exceptions import MigrationError
from .summary import Summary


class MigrationStatus(str, Enum):
    """Migration status enumeration."""

    COMPLETED = 'completed'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class MigrationResult(BaseModel):
    """Result of moving one service instance."""

    org: str = Field(..., description='Org name')
    space: str = Field(..., description='Space name')
    name: str = Field(..., description='Service instance name')
    service: str = Field(default='', description='Service offering name')
    status: MigrationStatus = Field(..., description='Migration status')

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = Field(default=None)

    message: str = Field(default='', description='Skip reason or error message')
    instance: Optional[ServiceInstance] = Field(
        default=None, description='Instance as exported or imported'
    )

    @property
    def success(self) -> bool:
        return self.status == MigrationStatus.COMPLETED


class MigrationContext(BaseModel):
    """Run-scoped dependencies shared by walkers, movers and strategies."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: Config = Field(..., description='Run configuration')
    clients: ClientHolder = Field(..., description='Directional client holder')
    executor: ShellExecutor = Field(..., description='Shell executor')
    summary: Summary = Field(..., description='Outcome ledger of the run')
    parser: ManifestParser = Field(default_factory=ManifestParser)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def domains_to_replace(self) -> Dict[str, str]:
        return self.config.domains_to_replace

    @property
    def ignore_service_keys(self) -> bool:
        return self.config.ignore_service_keys


class StrategySettings(BaseModel):
    """Settings of a strategy that takes none."""

    model_config = ConfigDict(extra='ignore')


class MigrationStrategy(ABC):
    """Abstract base class for service instance migration strategies.

    Strategies are stateless with respect to the instance they move: all
    per-instance state travels in the arguments, so one strategy object
    serves concurrent migrations.
    """

    name: ClassVar[str] = ''
    settings_model: ClassVar[Type[BaseModel]] = StrategySettings

    def __init__(self, context: MigrationContext, settings: Optional[BaseModel] = None):
        """Initialize migration strategy.

        Args:
            context: Run-scoped clients and settings
            settings: Decoded strategy settings
        """
        self.context = context
        self.settings = settings if settings is not None else self.settings_model()
        self.logger = logger.bind(strategy=self.__class__.__name__)

    def validate(self, instance: ServiceInstance, is_export: bool) -> None:
        """Check that the instance can be moved in the given direction.

        Raises:
            MigrationError: If the instance or the settings are not usable
        """

    @abstractmethod
    async def export_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        """Capture whatever the instance needs beyond its CF metadata.

        Args:
            org: Source org name
            space: Source space name
            instance: Instance as read from the source foundation

        Returns:
            The instance enriched with exported data
        """

    @abstractmethod
    async def import_instance(
        self, org: str, space: str, instance: ServiceInstance
    ) -> ServiceInstance:
        """Recreate the instance on the target foundation.

        Args:
            org: Target org name
            space: Target space name
            instance: Instance as read from disk

        Returns:
            The imported instance
        """

    async def target_space_guid(self, client: CFClient, org: str, space: str) -> str:
        """Resolve the GUID of a target space.

        Raises:
            MigrationError: If the org does not exist
            SpaceNotFoundError: If the space does not exist
        """
        try:
            found = await client.get_space_by_name(org, space)
        except OrganizationNotFoundError:
            raise MigrationError(f'could not find org "{org}"')
        return found['guid']


def replace_domain(value: str, domains: Mapping[str, str]) -> Tuple[str, bool]:
    """Replace the first configured domain found in a value.

    Every occurrence of that domain is replaced; later domains are not
    considered once one matched.

    Returns:
        The new value and whether a replacement happened
    """
    for old, new in domains.items():
        if old and old in value:
            return value.replace(old, new), True
    return value, False


def replace_domains_in_credentials(
    credentials: Mapping[str, Any], domains: Mapping[str, str]
) -> Dict[str, Any]:
    """Return a copy of credentials with domains replaced in string values."""
    replaced = {}
    for key, value in credentials.items():
        if isinstance(value, str):
            new_value, changed = replace_domain(value, domains)
            if changed:
                logger.debug(f'Replaced value {value!r} with {new_value!r}')
            value = new_value
        replaced[key] = value
    return replaced


def replace_route_domains(manifest: AppManifest, domains: Mapping[str, str]) -> None:
    """Point every application route of a manifest at the target domains."""
    for app in manifest.applications:
        for route in app.routes:
            new_route, changed = replace_domain(route.route, domains)
            if changed:
                logger.debug(f'Replaced route {route.route} with {new_route}')
                route.route = new_route
