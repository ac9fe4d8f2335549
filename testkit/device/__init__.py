"""
Device Package

Configuration, testing and orchestration of the device under test.
"""

from .configurator import (
    Configurator,
    ConfiguratorConfig,
    ConfigurationError,
    ConfigurationState,
    Property,
    PropertyMismatchError,
)
from .measurements import (
    Expectations,
    PinMeasurement,
    PowerMeasurement,
    PowerSource,
    TestResult,
)
from .tester import Tester, TesterConfig, TestStep, evaluate
from .testkit_device import TesterKitDevice, TesterKitDeviceConfig, DeviceError

__all__ = [
    'Configurator',
    'ConfiguratorConfig',
    'ConfigurationError',
    'ConfigurationState',
    'Property',
    'PropertyMismatchError',
    'Expectations',
    'PinMeasurement',
    'PowerMeasurement',
    'PowerSource',
    'TestResult',
    'Tester',
    'TesterConfig',
    'TestStep',
    'evaluate',
    'TesterKitDevice',
    'TesterKitDeviceConfig',
    'DeviceError',
]
