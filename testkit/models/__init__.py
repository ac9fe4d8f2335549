"""
Models Package

Host configuration loading and validation.
"""

from .config_manager import ConfigManager
from .config_schema import ConfigValidator, create_default_config

__all__ = [
    'ConfigManager',
    'ConfigValidator',
    'create_default_config',
]
