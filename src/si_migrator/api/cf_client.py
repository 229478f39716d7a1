"""Cloud Foundry (Cloud Controller v3) API client implementation."""

import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import aiohttp
import requests
from loguru import logger
from pydantic import BaseModel

from ..config.config import CloudControllerConfig
from .exceptions import (
    AuthenticationError,
    JobFailedError,
    NotFoundError,
    OrganizationNotFoundError,
    PermissionDeniedError,
    PlatformAPIError,
    RateLimitError,
    SpaceNotFoundError,
)
from .uaa import Token, UAAClient


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


def _error_message(status: int, data: Any, text: str = '') -> str:
    if isinstance(data, dict) and data.get('errors'):
        return '; '.join(
            e.get('detail') or e.get('title', '') for e in data['errors']
        )
    if isinstance(data, dict) and data.get('description'):
        return data['description']
    return f'HTTP {status}: {text}' if text else f'HTTP {status}'


def _check_status(status: int, headers: Dict[str, str], data: Any, text: str = '') -> None:
    """Raise the typed error for a failed response.

    Raises:
        PlatformAPIError: For various API errors
    """
    if status == 429:
        retry_after = int(headers.get('Retry-After', 60))
        raise RateLimitError(
            f'Rate limit exceeded. Retry after {retry_after} seconds',
            retry_after=retry_after,
        )

    if status == 401:
        raise AuthenticationError('Authentication failed', status_code=status)

    if status == 403:
        raise PermissionDeniedError(
            f'Permission denied: {_error_message(status, data, text)}',
            status_code=status,
        )

    if status == 404:
        raise NotFoundError('Resource not found', status_code=status)

    if status >= 400:
        raise PlatformAPIError(
            f'API request failed: {_error_message(status, data, text)}',
            status_code=status,
            response_data=data if isinstance(data, dict) else None,
        )


class CFClient:
    """Cloud Controller v3 client authenticated through UAA."""

    job_poll_interval = 2.0
    job_timeout = 600.0

    def __init__(self, config: CloudControllerConfig):
        """Initialize Cloud Foundry client.

        Args:
            config: Cloud Controller configuration
        """
        self.config = config
        self.base_url = config.url.rstrip('/')
        self.verify = not config.skip_ssl_validation
        self.token: Optional[Token] = None

        self.session = requests.Session()
        self.session.verify = self.verify
        self.session.headers.update(
            {'Content-Type': 'application/json', 'User-Agent': 'si-migrator/0.1.0'}
        )

        logger.debug(f'Initialized Cloud Foundry client for {config.url}')

    def authenticate(self) -> None:
        """Discover the UAA endpoint and fetch an access token.

        Raises:
            AuthenticationError: If the credentials are rejected
        """
        self.session.headers.pop('Authorization', None)
        root = self.get('/')
        links = (root.data or {}).get('links', {})
        uaa_link = links.get('uaa') or links.get('login') or {}
        uaa_url = uaa_link.get('href')
        if not uaa_url:
            raise AuthenticationError(f'Could not discover UAA endpoint for {self.base_url}')

        uaa = UAAClient(uaa_url, verify=self.verify, timeout=self.config.timeout)
        self.token = uaa.fetch_token(
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            username=self.config.username,
            password=self.config.password,
        )
        self.session.headers.update({'Authorization': self.token.authorization})
        logger.info(f'Authenticated against {self.base_url}')

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL from endpoint.

        Args:
            endpoint: API endpoint path or absolute URL

        Returns:
            Full API URL
        """
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        return urljoin(self.base_url + '/', endpoint.lstrip('/'))

    def _handle_response(self, response: requests.Response) -> APIResponse:
        """Handle API response and convert to standard format.

        Args:
            response: Raw HTTP response

        Returns:
            Standardized API response
        """
        headers = dict(response.headers)

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text

        _check_status(response.status_code, headers, data, response.text)

        return APIResponse(
            status_code=response.status_code,
            data=data,
            headers=headers,
            success=200 <= response.status_code < 300,
        )

    async def _make_request_async(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> APIResponse:
        """Make asynchronous API request.

        A rejected access token is replaced once and the request retried.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            data: Request body data
            **kwargs: Additional request arguments

        Returns:
            API response
        """
        try:
            return await self._send_async(method, endpoint, params, data, **kwargs)
        except AuthenticationError:
            if self.token is None:
                raise
            logger.info(f'Access token for {self.base_url} was rejected, authenticating again')
            await asyncio.to_thread(self.authenticate)
            return await self._send_async(method, endpoint, params, data, **kwargs)

    async def _send_async(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> APIResponse:
        url = self._build_url(endpoint)

        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'si-migrator/0.1.0',
        }
        if self.token:
            headers['Authorization'] = self.token.authorization

        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        async with aiohttp.ClientSession(headers=headers, timeout=timeout) as session:
            try:
                async with session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=data,
                    ssl=self.verify,
                    **kwargs,
                ) as response:
                    response_headers = dict(response.headers)
                    response_text = await response.text()

                    try:
                        response_data = json.loads(response_text) if response_text else None
                    except (ValueError, json.JSONDecodeError):
                        response_data = response_text

                    _check_status(
                        response.status, response_headers, response_data, response_text
                    )

                    return APIResponse(
                        status_code=response.status,
                        data=response_data,
                        headers=response_headers,
                        success=200 <= response.status < 300,
                    )

            except aiohttp.ClientError as e:
                logger.error(f'Network error during API request: {e}')
                raise PlatformAPIError(f'Network error: {e}')

    def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        """Make GET request.

        Args:
            endpoint: API endpoint
            params: Query parameters
            **kwargs: Additional request arguments

        Returns:
            API response
        """
        url = self._build_url(endpoint)

        try:
            response = self.session.get(
                url, params=params, timeout=self.config.timeout, **kwargs
            )
            return self._handle_response(response)
        except requests.RequestException as e:
            logger.error(f'Network error during GET request: {e}')
            raise PlatformAPIError(f'Network error: {e}')

    async def get_async(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return await self._make_request_async('GET', endpoint, params=params, **kwargs)

    async def post_async(
        self, endpoint: str, data: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return await self._make_request_async('POST', endpoint, data=data, **kwargs)

    async def patch_async(
        self, endpoint: str, data: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return await self._make_request_async('PATCH', endpoint, data=data, **kwargs)

    async def get_paginated_async(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get all pages of a paginated v3 endpoint.

        Args:
            endpoint: API endpoint
            params: Query parameters
            per_page: Items per page

        Returns:
            List of all resources from all pages
        """
        all_items = []
        params = dict(params or {})
        params['per_page'] = per_page

        next_url: Optional[str] = endpoint
        while next_url:
            response = await self.get_async(next_url, params=params)
            body = response.data or {}
            all_items.extend(body.get('resources', []))

            next_link = (body.get('pagination') or {}).get('next')
            next_url = next_link.get('href') if next_link else None
            # The next href already carries the query string
            params = None

        logger.debug(f'Retrieved {len(all_items)} items from {endpoint}')
        return all_items

    def test_connection(self) -> bool:
        """Test connection to the Cloud Controller.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            response = self.get('/v3/info')
            return response.success
        except PlatformAPIError as e:
            logger.error(f'Connection test failed: {e}')
            return False

    async def list_orgs(self) -> List[Dict[str, Any]]:
        return await self.get_paginated_async('/v3/organizations')

    async def get_org_by_name(self, name: str) -> Dict[str, Any]:
        """Find an organization by name.

        Raises:
            OrganizationNotFoundError: If no organization has that name
        """
        orgs = await self.get_paginated_async('/v3/organizations', params={'names': name})
        if not orgs:
            raise OrganizationNotFoundError(name)
        return orgs[0]

    async def list_spaces(self, org_guid: str) -> List[Dict[str, Any]]:
        return await self.get_paginated_async(
            '/v3/spaces', params={'organization_guids': org_guid}
        )

    async def get_space_by_name(self, org_name: str, space_name: str) -> Dict[str, Any]:
        """Find a space by org and space name.

        Raises:
            OrganizationNotFoundError: If the organization does not exist
            SpaceNotFoundError: If the space does not exist in the organization
        """
        org = await self.get_org_by_name(org_name)
        spaces = await self.get_paginated_async(
            '/v3/spaces',
            params={'organization_guids': org['guid'], 'names': space_name},
        )
        if not spaces:
            raise SpaceNotFoundError(org_name, space_name)
        return spaces[0]

    async def list_service_instances(self, space_guid: str) -> List[Dict[str, Any]]:
        return await self.get_paginated_async(
            '/v3/service_instances', params={'space_guids': space_guid}
        )

    async def get_service_instance_by_name(
        self, space_guid: str, name: str
    ) -> Optional[Dict[str, Any]]:
        instances = await self.get_paginated_async(
            '/v3/service_instances', params={'space_guids': space_guid, 'names': name}
        )
        return instances[0] if instances else None

    async def get_service_instance_parameters(self, guid: str) -> Dict[str, Any]:
        """Get managed service instance parameters.

        Brokers that do not support fetching parameters yield an empty mapping.
        """
        try:
            response = await self.get_async(f'/v3/service_instances/{guid}/parameters')
        except PlatformAPIError as e:
            logger.debug(f'Parameters for service instance {guid} unavailable: {e}')
            return {}
        return response.data or {}

    async def get_user_provided_credentials(self, guid: str) -> Dict[str, Any]:
        response = await self.get_async(f'/v3/service_instances/{guid}/credentials')
        return response.data or {}

    async def get_service_plan(self, plan_guid: str) -> Dict[str, Any]:
        """Get a service plan with its offering name resolved.

        Returns:
            Mapping with the plan ``name`` and the offering ``service`` name
        """
        response = await self.get_async(
            f'/v3/service_plans/{plan_guid}', params={'include': 'service_offering'}
        )
        plan = response.data or {}
        offerings = (plan.get('included') or {}).get('service_offerings') or [{}]
        return {
            'guid': plan.get('guid', plan_guid),
            'name': plan.get('name', ''),
            'service': offerings[0].get('name', ''),
        }

    async def find_service_plan(self, offering: str, plan_name: str) -> Optional[str]:
        """Find the GUID of a plan by offering and plan name."""
        plans = await self.get_paginated_async(
            '/v3/service_plans',
            params={'names': plan_name, 'service_offering_names': offering},
        )
        return plans[0]['guid'] if plans else None

    async def list_service_bindings(self, instance_guid: str) -> List[Dict[str, Any]]:
        return await self.get_paginated_async(
            '/v3/service_credential_bindings',
            params={'service_instance_guids': instance_guid, 'type': 'app'},
        )

    async def list_service_keys(self, instance_guid: str) -> List[Dict[str, Any]]:
        return await self.get_paginated_async(
            '/v3/service_credential_bindings',
            params={'service_instance_guids': instance_guid, 'type': 'key'},
        )

    async def get_binding_details(self, binding_guid: str) -> Dict[str, Any]:
        try:
            response = await self.get_async(
                f'/v3/service_credential_bindings/{binding_guid}/details'
            )
        except NotFoundError:
            return {}
        return response.data or {}

    async def get_binding_parameters(self, binding_guid: str) -> Dict[str, Any]:
        try:
            response = await self.get_async(
                f'/v3/service_credential_bindings/{binding_guid}/parameters'
            )
        except PlatformAPIError:
            return {}
        return response.data or {}

    async def get_app(self, app_guid: str) -> Dict[str, Any]:
        response = await self.get_async(f'/v3/apps/{app_guid}')
        return response.data or {}

    async def get_app_by_name(self, space_guid: str, name: str) -> Optional[Dict[str, Any]]:
        apps = await self.get_paginated_async(
            '/v3/apps', params={'space_guids': space_guid, 'names': name}
        )
        return apps[0] if apps else None

    async def get_app_manifest(self, app_guid: str) -> str:
        response = await self.get_async(f'/v3/apps/{app_guid}/manifest')
        return response.data if isinstance(response.data, str) else ''

    async def create_service_instance(
        self,
        space_guid: str,
        plan_guid: str,
        name: str,
        parameters: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a managed service instance and wait for the broker.

        Returns:
            The created service instance
        """
        body = {
            'type': 'managed',
            'name': name,
            'relationships': {
                'space': {'data': {'guid': space_guid}},
                'service_plan': {'data': {'guid': plan_guid}},
            },
            'tags': tags or [],
        }
        if parameters:
            body['parameters'] = parameters

        response = await self.post_async('/v3/service_instances', data=body)
        await self._wait_for_location(response)
        created = await self.get_service_instance_by_name(space_guid, name)
        return created or {}

    async def update_service_instance(
        self,
        guid: str,
        parameters: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
    ) -> None:
        body: Dict[str, Any] = {'tags': tags or []}
        if parameters:
            body['parameters'] = parameters
        response = await self.patch_async(f'/v3/service_instances/{guid}', data=body)
        await self._wait_for_location(response)

    async def create_user_provided_service_instance(
        self,
        space_guid: str,
        name: str,
        credentials: Optional[Dict[str, Any]] = None,
        syslog_drain_url: str = '',
        route_service_url: str = '',
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        body = {
            'type': 'user-provided',
            'name': name,
            'relationships': {'space': {'data': {'guid': space_guid}}},
            'credentials': credentials or {},
            'syslog_drain_url': syslog_drain_url,
            'route_service_url': route_service_url,
            'tags': tags or [],
        }
        response = await self.post_async('/v3/service_instances', data=body)
        return response.data or {}

    async def update_user_provided_service_instance(
        self,
        guid: str,
        credentials: Optional[Dict[str, Any]] = None,
        syslog_drain_url: str = '',
        route_service_url: str = '',
        tags: Optional[List[str]] = None,
    ) -> None:
        body = {
            'credentials': credentials or {},
            'syslog_drain_url': syslog_drain_url,
            'route_service_url': route_service_url,
            'tags': tags or [],
        }
        await self.patch_async(f'/v3/service_instances/{guid}', data=body)

    async def create_service_binding(
        self,
        instance_guid: str,
        app_guid: str,
        name: str = '',
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        body: Dict[str, Any] = {
            'type': 'app',
            'relationships': {
                'service_instance': {'data': {'guid': instance_guid}},
                'app': {'data': {'guid': app_guid}},
            },
        }
        if name:
            body['name'] = name
        if parameters:
            body['parameters'] = parameters
        response = await self.post_async('/v3/service_credential_bindings', data=body)
        await self._wait_for_location(response)

    async def create_service_key(
        self,
        instance_guid: str,
        name: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        body: Dict[str, Any] = {
            'type': 'key',
            'name': name,
            'relationships': {'service_instance': {'data': {'guid': instance_guid}}},
        }
        if parameters:
            body['parameters'] = parameters
        response = await self.post_async('/v3/service_credential_bindings', data=body)
        await self._wait_for_location(response)

    async def _wait_for_location(self, response: APIResponse) -> None:
        location = response.headers.get('Location') or response.headers.get('location')
        if response.status_code == 202 and location:
            await self.wait_for_job(location)

    async def wait_for_job(self, job_url: str) -> Dict[str, Any]:
        """Poll an asynchronous job until it completes.

        Args:
            job_url: Job URL from the Location header

        Returns:
            Final job resource

        Raises:
            JobFailedError: If the job fails or does not finish in time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.job_timeout

        while True:
            response = await self.get_async(job_url)
            job = response.data or {}
            state = job.get('state')

            if state == 'COMPLETE':
                return job
            if state == 'FAILED':
                raise JobFailedError(
                    f'job {job.get("guid", job_url)} failed: '
                    f'{_error_message(response.status_code, job)}',
                    response_data=job,
                )
            if loop.time() > deadline:
                raise JobFailedError(f'job {job_url} did not complete in time')

            await asyncio.sleep(self.job_poll_interval)

    def close(self):
        """Close the client session."""
        self.session.close()
        logger.debug('Cloud Foundry client session closed')

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


class CFClientFactory:
    """Factory for creating Cloud Foundry API clients."""

    @staticmethod
    def create_client(config: CloudControllerConfig) -> CFClient:
        """Create an authenticated client from configuration.

        Args:
            config: Cloud Controller configuration

        Returns:
            Authenticated Cloud Foundry client

        Raises:
            FieldError: If the configuration is incomplete
            AuthenticationError: If authentication fails
        """
        config.validate_auth()
        client = CFClient(config)
        client.authenticate()
        return client
