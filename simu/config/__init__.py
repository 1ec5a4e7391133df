"""
simu.config - Engine and scenario configuration

Provides YAML-based configuration parsing for simu.
"""

from .scenario import (
    ScenarioConfig,
    SimulationConfig,
    TransactionConfig,
    TransportConfig,
    load_config,
    parse_config,
)

__all__ = [
    'ScenarioConfig',
    'SimulationConfig',
    'TransactionConfig',
    'TransportConfig',
    'load_config',
    'parse_config',
]
