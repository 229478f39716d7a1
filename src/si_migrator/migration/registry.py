"""Resolution of service offerings to migration strategies."""

from typing import Dict, Iterable, Mapping, Optional, Type

from loguru import logger
from pydantic import ValidationError

from ..config.config import ConfigurationError, MigrationSection
from ..models.service_instance import ServiceInstance
from .strategies import (
    CredHubStrategy,
    DefaultStrategy,
    ECSStrategy,
    MySQLStrategy,
    SQLServerStrategy,
    UserProvidedStrategy,
)
from .strategy import MigrationContext, MigrationStrategy


OFFERING_STRATEGIES: Dict[str, str] = {
    'p.mysql': 'mysql',
    'credhub': 'credhub',
    'SQLServer': 'sqlserver',
    'MSSQL-Broker': 'sqlserver',
    'ecs-bucket': 'ecs',
}

STRATEGY_TYPES: Dict[str, Type[MigrationStrategy]] = {
    'mysql': MySQLStrategy,
    'credhub': CredHubStrategy,
    'sqlserver': SQLServerStrategy,
    'ecs': ECSStrategy,
}


class StrategyRegistry:
    """Maps offering names to strategies built from their configured settings.

    Every configured migrator entry is decoded once, when the registry is
    built, so invalid settings fail the run before any instance is touched.
    Lookups are pure and return the same strategy object for the same input.
    """

    def __init__(
        self,
        context: MigrationContext,
        section: MigrationSection,
        strategy_types: Optional[Mapping[str, Type[MigrationStrategy]]] = None,
        offerings: Optional[Mapping[str, str]] = None,
    ):
        """Initialize strategy registry.

        Args:
            context: Run-scoped dependencies handed to each strategy
            section: Migration section of the configuration
            strategy_types: Strategy classes keyed by type name
            offerings: Offering names mapped to strategy type names

        Raises:
            ConfigurationError: If a migrator entry cannot be decoded
        """
        self.context = context
        self.use_default_migrator = section.use_default_migrator
        self.strategy_types = dict(STRATEGY_TYPES if strategy_types is None else strategy_types)
        self.offerings = dict(OFFERING_STRATEGIES if offerings is None else offerings)
        self.logger = logger.bind(component='StrategyRegistry')

        entries = {entry.name: entry.value for entry in section.migrators}
        self._strategies: Dict[str, MigrationStrategy] = {}
        for type_name, strategy_cls in self.strategy_types.items():
            settings = self._settings_for(type_name, entries)
            self._strategies[type_name] = self._build(strategy_cls, type_name, settings)

        # Entries naming an offering without a dedicated strategy opt it
        # into the default one.
        self._opted_in = {
            name
            for name in entries
            if name not in self.strategy_types and name not in self.offerings
        }
        for name in sorted(self._opted_in):
            self.logger.debug(f'Offering {name} uses the default migrator')

        self._default = DefaultStrategy(context)
        self._user_provided = UserProvidedStrategy(context)

    def _settings_for(self, type_name: str, entries: Mapping[str, Dict]) -> Dict:
        if type_name in entries:
            return entries[type_name]
        for offering, mapped in self.offerings.items():
            if mapped == type_name and offering in entries:
                return entries[offering]
        return {}

    def _build(
        self, strategy_cls: Type[MigrationStrategy], name: str, settings: Dict
    ) -> MigrationStrategy:
        try:
            decoded = strategy_cls.settings_model.model_validate(settings)
        except ValidationError as e:
            raise ConfigurationError(f'invalid settings for migrator {name}: {e}')
        return strategy_cls(self.context, decoded)

    def strategy_type(self, offering: str) -> Optional[str]:
        """Return the strategy type name for an offering, if it has one."""
        if offering in self.offerings:
            return self.offerings[offering]
        if offering in self.strategy_types:
            return offering
        return None

    def lookup(self, offering: str) -> Optional[MigrationStrategy]:
        """Return the strategy for a managed service offering.

        Returns:
            The dedicated strategy, the default one for other offerings when
            enabled, or None when the offering is not migrated
        """
        type_name = self.strategy_type(offering)
        if type_name:
            return self._strategies[type_name]
        if self.use_default_migrator or offering in self._opted_in:
            return self._default
        return None

    def resolve(self, instance: ServiceInstance) -> Optional[MigrationStrategy]:
        """Return the strategy moving an instance."""
        if instance.is_user_provided:
            return self._user_provided
        return self.lookup(instance.service)

    def type_name(self, instance: ServiceInstance) -> str:
        """Return the name an instance is selected by in the services filter."""
        if instance.is_user_provided:
            return UserProvidedStrategy.name
        return self.strategy_type(instance.service) or DefaultStrategy.name

    def is_selected(self, instance: ServiceInstance, services: Iterable[str]) -> bool:
        """Check an instance against the services allow-list.

        Entries are compared case-insensitively with the offering name and
        the strategy type name. An empty list selects every instance.
        """
        wanted = {s.strip().lower() for s in services if s.strip()}
        if not wanted:
            return True
        return (
            instance.service.lower() in wanted
            or self.type_name(instance).lower() in wanted
        )
