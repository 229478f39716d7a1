"""Service Instance Migrator

Moves Cloud Foundry service instances, and the data behind them, from one
foundation to another while keeping their org and space layout.
"""

__version__ = '0.1.0'
__author__ = 'Service Instance Migration Team'
__email__ = 'team@example.com'

from .cli import main

__all__ = ['main']
