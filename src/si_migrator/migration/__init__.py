"""Migration engine, hierarchy walkers and strategies."""

from .strategy import (
    MigrationContext,
    MigrationResult,
    MigrationStatus,
    MigrationStrategy,
)
from .registry import StrategyRegistry
from .mover import InstanceMover
from .exporter import OrgExporter, SpaceExporter
from .importer import OrgImporter, SpaceImporter
from .engine import MigrationEngine
from .summary import Summary

__all__ = [
    'MigrationContext',
    'MigrationResult',
    'MigrationStatus',
    'MigrationStrategy',
    'StrategyRegistry',
    'InstanceMover',
    'OrgExporter',
    'SpaceExporter',
    'OrgImporter',
    'SpaceImporter',
    'MigrationEngine',
    'Summary',
]
