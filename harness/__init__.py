"""Support code for running the varnish-vtest suite.

This package provides utilities for:
- Configuration management (varnishd binary, workdir locations, timeouts)
- Cleaning up instance workdirs leaked by interrupted test runs
"""

from .config import get_config, load_config, reset_config, generate_sample_config, Config
from .clean import clean_workdirs, find_instance_workdirs, format_size, list_workdirs

__all__ = [
    # Config functions
    'get_config',
    'load_config',
    'reset_config',
    'generate_sample_config',
    'Config',
    # Clean functions
    'clean_workdirs',
    'find_instance_workdirs',
    'format_size',
    'list_workdirs',
]
