"""Built-in service instance migration strategies."""

from .ccdb import CCDBStrategy, ECSStrategy, SQLServerStrategy
from .credhub import CredHubStrategy
from .default import DefaultStrategy
from .mysql import MySQLStrategy
from .user_provided import UserProvidedStrategy

__all__ = [
    'CCDBStrategy',
    'CredHubStrategy',
    'DefaultStrategy',
    'ECSStrategy',
    'MySQLStrategy',
    'SQLServerStrategy',
    'UserProvidedStrategy',
]
