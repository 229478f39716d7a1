"""UAA OAuth2 token retrieval."""

from typing import Optional

import requests
from loguru import logger
from pydantic import BaseModel

from .exceptions import AuthenticationError, PlatformAPIError


class Token(BaseModel):
    """OAuth2 access token."""

    access_token: str
    token_type: str = 'bearer'
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None

    @property
    def authorization(self) -> str:
        return f'Bearer {self.access_token}'


class UAAClient:
    """Fetches tokens from a UAA server with client or password grants."""

    def __init__(self, url: str, verify: bool = False, timeout: int = 30):
        """Initialize UAA client.

        Args:
            url: UAA base URL
            verify: Verify TLS certificates
            timeout: Request timeout in seconds
        """
        self.url = url.rstrip('/')
        self.verify = verify
        self.timeout = timeout

    def fetch_token(
        self,
        client_id: str = '',
        client_secret: str = '',
        username: str = '',
        password: str = '',
        password_client: str = 'cf',
    ) -> Token:
        """Fetch an access token.

        Client credentials are used when a client secret is present, the
        password grant otherwise.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            username: User name for the password grant
            password: Password for the password grant
            password_client: Client used for the password grant

        Returns:
            Access token

        Raises:
            AuthenticationError: If UAA rejects the credentials
        """
        if client_secret:
            data = {'grant_type': 'client_credentials', 'token_format': 'opaque'}
            auth = (client_id, client_secret)
        else:
            data = {
                'grant_type': 'password',
                'username': username,
                'password': password,
                'token_format': 'opaque',
            }
            auth = (client_id or password_client, '')

        try:
            response = requests.post(
                f'{self.url}/oauth/token',
                data=data,
                auth=auth,
                headers={'Accept': 'application/json'},
                verify=self.verify,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f'Network error while requesting UAA token: {e}')
            raise PlatformAPIError(f'Network error: {e}')

        if response.status_code in (400, 401, 403):
            raise AuthenticationError(
                f'UAA authentication failed at {self.url}',
                status_code=response.status_code,
            )
        if response.status_code >= 300:
            raise PlatformAPIError(
                f'UAA token request failed: HTTP {response.status_code}',
                status_code=response.status_code,
            )

        return Token(**response.json())
