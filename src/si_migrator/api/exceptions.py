"""Platform API exceptions."""

from typing import Optional


class PlatformAPIError(Exception):
    """Base exception for Cloud Foundry, BOSH and Ops Manager API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[dict] = None,
    ):
        """Initialize platform API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response_data: Response data from API
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class AuthenticationError(PlatformAPIError):
    """Authentication error with a platform API."""

    pass


class RateLimitError(PlatformAPIError):
    """Rate limit exceeded error."""

    def __init__(self, message: str, retry_after: int = 60, **kwargs):
        """Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds to wait before retry
            **kwargs: Additional arguments for base class
        """
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NotFoundError(PlatformAPIError):
    """Resource not found error."""

    pass


class PermissionDeniedError(PlatformAPIError):
    """Permission denied error."""

    pass


class OrganizationNotFoundError(NotFoundError):
    """Named organization does not exist on the foundation."""

    def __init__(self, org: str, **kwargs):
        super().__init__(f'organization "{org}" could not be found', **kwargs)
        self.org = org


class SpaceNotFoundError(NotFoundError):
    """Named space does not exist in the organization."""

    def __init__(self, org: str, space: str, **kwargs):
        super().__init__(
            f'space "{space}" could not be found in org "{org}"', **kwargs
        )
        self.org = org
        self.space = space


class ServicePlanNotFoundError(NotFoundError):
    """No plan with the requested name exists for the offering."""

    def __init__(self, plan: str, instance: str, **kwargs):
        super().__init__(
            f'failed to find a service plan "{plan}" for service instance "{instance}"',
            **kwargs,
        )
        self.plan = plan
        self.instance = instance


class JobFailedError(PlatformAPIError):
    """Asynchronous Cloud Controller job finished in a failed state."""

    pass


class BoshError(PlatformAPIError):
    """BOSH director or CLI error."""

    def __init__(self, message: str, output: str = '', **kwargs):
        super().__init__(message, **kwargs)
        self.output = output


class OpsManagerError(PlatformAPIError):
    """Ops Manager API error."""

    pass
