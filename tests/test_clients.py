"""Tests for the lazily built client holder."""

import threading
import time
from unittest.mock import Mock

import pytest

from si_migrator.config.config import (
    BoshConfig,
    CloudControllerConfig,
    Config,
    ConfigurationError,
)
from si_migrator.migration.clients import ClientHolder
from si_migrator.utils.shell import ShellExecutor


class TestClientHolder:
    """Test client construction and caching."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = Config(
            source_api={'url': 'https://api.source.example.com', 'username': 'a', 'password': 'b'},
            target_api={'url': 'https://api.target.example.com', 'username': 'a', 'password': 'b'},
            foundations={
                'target': {
                    'url': 'https://opsman.target.example.com',
                    'client_id': 'c',
                    'client_secret': 's',
                }
            },
        )
        self.executor = ShellExecutor(dry_run=True)
        self.cf_builder = Mock(side_effect=lambda settings: Mock(settings=settings))
        self.bosh_builder = Mock(side_effect=lambda settings, executor: Mock(settings=settings))
        self.opsman = Mock()
        self.opsman_builder = Mock(return_value=self.opsman)

    def holder(self, config=None) -> ClientHolder:
        return ClientHolder(
            config or self.config,
            self.executor,
            cf_builder=self.cf_builder,
            bosh_builder=self.bosh_builder,
            opsman_builder=self.opsman_builder,
        )

    def test_clients_are_cached(self):
        holder = self.holder()

        first = holder.source_cf_client()
        second = holder.cf_client(True)

        assert first is second
        assert self.cf_builder.call_count == 1
        assert first.settings.url == 'https://api.source.example.com'

    def test_directions_are_separate(self):
        holder = self.holder()

        assert holder.source_cf_client() is not holder.target_cf_client()
        assert holder.target_cf_client().settings.url == 'https://api.target.example.com'

    def test_concurrent_first_access_builds_once(self):
        """Test that racing callers share one client."""

        def slow_build(settings):
            time.sleep(0.05)
            return Mock(settings=settings)

        self.cf_builder.side_effect = slow_build
        holder = self.holder()
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(holder.source_cf_client()))
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.cf_builder.call_count == 1
        assert all(client is results[0] for client in results)

    def test_bosh_settings_from_opsman(self):
        """Test that an unset director is read from Ops Manager."""
        self.opsman.bosh_config.return_value = BoshConfig(url='https://10.0.0.6')
        holder = self.holder()

        client = holder.target_bosh_client()

        assert client.settings.url == 'https://10.0.0.6'
        self.opsman_builder.assert_called_once_with(self.config.foundations.target)

    def test_cf_settings_from_opsman(self):
        self.opsman.cf_api_config.return_value = CloudControllerConfig(
            url='https://api.sys.example.com'
        )
        config = self.config.model_copy(update={'target_api': CloudControllerConfig()})
        holder = self.holder(config)

        assert holder.target_cf_client().settings.url == 'https://api.sys.example.com'

    def test_missing_foundation(self):
        holder = self.holder()

        with pytest.raises(ConfigurationError, match='foundations.source'):
            holder.source_bosh_client()

    def test_failed_build_not_retried(self):
        """Test that a configuration error is re-raised without building again."""
        self.bosh_builder.side_effect = ConfigurationError('must specify an authentication type')
        self.opsman.bosh_config.return_value = BoshConfig(url='https://10.0.0.6')
        holder = self.holder()

        for _ in range(2):
            with pytest.raises(ConfigurationError, match='authentication type'):
                holder.target_bosh_client()

        assert self.bosh_builder.call_count == 1

    def test_close(self):
        holder = self.holder()
        client = holder.source_cf_client()

        holder.close()

        client.close.assert_called_once()
        assert holder.source_cf_client() is not client
