"""Data models for service instance migration."""

from .service_instance import (
    MANAGED_SERVICE_INSTANCE,
    USER_PROVIDED_SERVICE_INSTANCE,
    Application,
    AppManifest,
    ServiceBinding,
    ServiceInstance,
    ServiceKey,
)

__all__ = [
    'MANAGED_SERVICE_INSTANCE',
    'USER_PROVIDED_SERVICE_INSTANCE',
    'Application',
    'AppManifest',
    'ServiceBinding',
    'ServiceInstance',
    'ServiceKey',
]
