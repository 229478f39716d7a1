"""Ops Manager API client and platform property lookups."""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from loguru import logger

from ..config.config import (
    Authentication,
    BoshConfig,
    ClientCredentials,
    CloudControllerConfig,
    OpsManagerConfig,
    UAAAuth,
)
from .exceptions import AuthenticationError, OpsManagerError, PlatformAPIError
from .uaa import Token, UAAClient


CF_PRODUCT_TYPE = 'cf'


class OpsManClient:
    """Read-only Ops Manager API client."""

    def __init__(self, config: OpsManagerConfig, timeout: int = 60):
        """Initialize Ops Manager client.

        Args:
            config: Ops Manager configuration of one foundation
            timeout: Request timeout in seconds
        """
        self.config = config
        self.base_url = config.url.rstrip('/')
        self.timeout = timeout
        self.token: Optional[Token] = None
        self.session = requests.Session()
        self.session.verify = False
        self.session.headers.update({'Accept': 'application/json'})

    def authenticate(self) -> None:
        """Fetch a token from the Ops Manager UAA.

        Client credentials are used when a client secret is configured,
        user credentials otherwise.

        Raises:
            AuthenticationError: If UAA rejects the credentials
        """
        uaa = UAAClient(f'{self.base_url}/uaa', verify=False, timeout=self.timeout)
        if self.config.client_secret:
            self.token = uaa.fetch_token(
                client_id=self.config.client_id,
                client_secret=self.config.client_secret,
            )
        else:
            self.token = uaa.fetch_token(
                username=self.config.username,
                password=self.config.password,
                password_client='opsman',
            )
        self.session.headers.update({'Authorization': self.token.authorization})
        logger.debug(f'Authenticated against Ops Manager {self.base_url}')

    def curl(self, path: str) -> Any:
        """GET an Ops Manager API path and return the decoded JSON body.

        Raises:
            OpsManagerError: If the request fails
        """
        url = f'{self.base_url}/{path.lstrip("/")}'
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f'Network error during Ops Manager request: {e}')
            raise OpsManagerError(f'Network error: {e}')

        if response.status_code == 401:
            raise AuthenticationError('Ops Manager authentication failed', status_code=401)
        if response.status_code >= 400:
            raise OpsManagerError(
                f'Ops Manager request {path} failed: HTTP {response.status_code}',
                status_code=response.status_code,
            )
        return response.json()

    def deployed_product(self, product_type: str = CF_PRODUCT_TYPE) -> str:
        """Return the installation name (GUID) of a deployed product."""
        for product in self.curl('/api/v0/deployed/products'):
            if product.get('type') == product_type:
                return product['installation_name']
        raise OpsManagerError(f'product {product_type!r} is not deployed')

    def deployed_product_credentials(self, product_guid: str, reference: str) -> Dict[str, Any]:
        data = self.curl(
            f'/api/v0/deployed/products/{product_guid}/credentials/{reference}'
        )
        return data.get('credential', {}).get('value', {})

    def credhub_admin_secret(self, product_guid: str) -> str:
        """Return the CredHub admin client secret of a deployed CF tile."""
        credentials = self.deployed_product_credentials(
            product_guid, '.uaa.credhub_admin_client_client_credentials'
        )
        secret = credentials.get('password', '')
        if not secret:
            raise OpsManagerError(f'credhub admin secret not found for {product_guid}')
        return secret

    def staged_product_properties(self, product_guid: str) -> Dict[str, Any]:
        data = self.curl(f'/api/v0/staged/products/{product_guid}/properties')
        return data.get('properties', {})

    def bosh_environment(self) -> Tuple[str, str, str]:
        """Return the director address, client id and client secret.

        The values come from the BOSH command line credentials, a string of
        the form ``BOSH_CLIENT=.. BOSH_CLIENT_SECRET=.. BOSH_ENVIRONMENT=.. bosh``.
        """
        data = self.curl('/api/v0/deployed/director/credentials/bosh_commandline_credentials')
        values = {}
        for part in data.get('credential', '').split():
            key, sep, value = part.partition('=')
            if sep:
                values[key] = value
        return (
            values.get('BOSH_ENVIRONMENT', ''),
            values.get('BOSH_CLIENT', ''),
            values.get('BOSH_CLIENT_SECRET', ''),
        )

    def certificate_authorities(self) -> List[Dict[str, Any]]:
        data = self.curl('/api/v0/certificate_authorities')
        return data.get('certificate_authorities', [])

    def cf_api_config(self, deployment: str = '') -> CloudControllerConfig:
        """Build Cloud Controller settings from the deployed CF tile."""
        deployment = deployment or self.deployed_product()
        admin = self.deployed_product_credentials(deployment, '.uaa.admin_credentials')
        properties = self.staged_product_properties(deployment)
        system_domain = properties.get('.cloud_controller.system_domain', {}).get('value')
        if not system_domain:
            raise OpsManagerError(f'system domain is not set for product {deployment}')

        return CloudControllerConfig(
            url=f'https://api.{system_domain}',
            username=admin.get('identity', ''),
            password=admin.get('password', ''),
        )

    def bosh_config(self) -> BoshConfig:
        """Build BOSH director settings from the Ops Manager director tile."""
        deployment = self.deployed_product()
        environment, client_id, client_secret = self.bosh_environment()

        parsed = urlparse(environment if '://' in environment else f'https://{environment}')
        scheme = parsed.scheme or 'https'
        url = f'{scheme}://{parsed.hostname}'
        if parsed.port and parsed.port != 443:
            url = f'{url}:{parsed.port}'

        active = [ca for ca in self.certificate_authorities() if ca.get('active')]
        root_ca = active[-1].get('cert_pem', '') if active else ''

        return BoshConfig(
            url=url,
            all_proxy=self.config.all_proxy_url(),
            root_ca_cert=root_ca,
            authentication=Authentication(
                uaa=UAAAuth(
                    url=f'{scheme}://{parsed.hostname}:8443',
                    client_credentials=ClientCredentials(
                        client_id=client_id, client_secret=client_secret
                    ),
                )
            ),
            deployment=deployment,
        )

    def test_connection(self) -> bool:
        try:
            self.curl('/api/v0/info')
            return True
        except PlatformAPIError as e:
            logger.error(f'Ops Manager connection test failed: {e}')
            return False

    def close(self):
        self.session.close()


class OpsManClientFactory:
    """Factory for creating Ops Manager clients."""

    @staticmethod
    def create_client(config: OpsManagerConfig) -> OpsManClient:
        """Create an authenticated Ops Manager client.

        Raises:
            FieldError: If the configuration is incomplete
            AuthenticationError: If authentication fails
        """
        config.validate_auth()
        client = OpsManClient(config)
        client.authenticate()
        return client
