"""Lazily built, memoized clients for the source and target foundations."""

import threading
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..api.bosh_client import BoshClient, BoshClientFactory
from ..api.cf_client import CFClient, CFClientFactory
from ..api.opsman_client import OpsManClient, OpsManClientFactory
from ..config.config import (
    BoshConfig,
    CloudControllerConfig,
    Config,
    ConfigurationError,
    OpsManagerConfig,
)
from ..utils.shell import ShellExecutor


CFBuilder = Callable[[CloudControllerConfig], CFClient]
BoshBuilder = Callable[[BoshConfig, ShellExecutor], BoshClient]
OpsManBuilder = Callable[[OpsManagerConfig], OpsManClient]

_CLIENT_KEYS = (
    'source_cf',
    'target_cf',
    'source_bosh',
    'target_bosh',
    'source_opsman',
    'target_opsman',
)


def _side(is_source: bool) -> str:
    return 'source' if is_source else 'target'


class ClientHolder:
    """Owns the six directional clients of one run.

    Each client is built on first access and cached; a per-client lock
    makes concurrent first access build it exactly once. Cached clients
    are shared read-only by all instance migrations. A build that fails on
    configuration is remembered and re-raised without building again.
    """

    def __init__(
        self,
        config: Config,
        executor: ShellExecutor,
        cf_builder: Optional[CFBuilder] = None,
        bosh_builder: Optional[BoshBuilder] = None,
        opsman_builder: Optional[OpsManBuilder] = None,
    ):
        """Initialize client holder.

        Args:
            config: Run configuration
            executor: Shell executor handed to BOSH clients
            cf_builder: Builds a Cloud Foundry client from its settings
            bosh_builder: Builds a BOSH client from its settings
            opsman_builder: Builds an Ops Manager client from its settings
        """
        self.config = config
        self.executor = executor
        self.cf_builder = cf_builder or CFClientFactory.create_client
        self.bosh_builder = bosh_builder or BoshClientFactory.create_client
        self.opsman_builder = opsman_builder or OpsManClientFactory.create_client
        self.logger = logger.bind(component='ClientHolder')

        self._clients: Dict[str, Any] = {}
        self._errors: Dict[str, ConfigurationError] = {}
        self._locks = {key: threading.Lock() for key in _CLIENT_KEYS}

    def _get(self, key: str, build: Callable[[], Any]) -> Any:
        client = self._clients.get(key)
        if client is not None:
            return client

        with self._locks[key]:
            if key in self._errors:
                raise self._errors[key]
            client = self._clients.get(key)
            if client is None:
                self.logger.debug(f'Building {key} client')
                try:
                    client = build()
                except ConfigurationError as e:
                    self._errors[key] = e
                    raise
                self._clients[key] = client
        return client

    def source_cf_client(self) -> CFClient:
        return self.cf_client(True)

    def target_cf_client(self) -> CFClient:
        return self.cf_client(False)

    def cf_client(self, is_source: bool) -> CFClient:
        return self._get(f'{_side(is_source)}_cf', lambda: self._build_cf(is_source))

    def source_bosh_client(self) -> BoshClient:
        return self.bosh_client(True)

    def target_bosh_client(self) -> BoshClient:
        return self.bosh_client(False)

    def bosh_client(self, is_source: bool) -> BoshClient:
        return self._get(f'{_side(is_source)}_bosh', lambda: self._build_bosh(is_source))

    def source_opsman_client(self) -> OpsManClient:
        return self.opsman_client(True)

    def target_opsman_client(self) -> OpsManClient:
        return self.opsman_client(False)

    def opsman_client(self, is_source: bool) -> OpsManClient:
        return self._get(
            f'{_side(is_source)}_opsman', lambda: self._build_opsman(is_source)
        )

    def _build_cf(self, is_source: bool) -> CFClient:
        settings = self.config.cf_api(is_source)
        if not settings.is_set():
            self.logger.debug(
                f'No {_side(is_source)} CF API configured, reading it from Ops Manager'
            )
            settings = self.opsman_client(is_source).cf_api_config()
        return self.cf_builder(settings)

    def _build_bosh(self, is_source: bool) -> BoshClient:
        settings = self.config.bosh(is_source)
        if not settings.is_set():
            self.logger.debug(
                f'No {_side(is_source)} BOSH director configured, reading it from Ops Manager'
            )
            settings = self.opsman_client(is_source).bosh_config()
        return self.bosh_builder(settings, self.executor)

    def _build_opsman(self, is_source: bool) -> OpsManClient:
        foundation = self.config.foundation(is_source)
        if not foundation.is_set():
            raise ConfigurationError(
                f'foundations.{_side(is_source)} must be configured to reach Ops Manager'
            )
        return self.opsman_builder(foundation)

    def close(self) -> None:
        """Close every client that was built."""
        for client in list(self._clients.values()):
            close = getattr(client, 'close', None)
            if close:
                close()
        self._clients.clear()
        self._errors.clear()
