"""
TestKit Host Library

Drives a TestKit fixture (ATE controller plus the device under test) over a
line-oriented serial protocol: discovery, property configuration, pin and
power tests, firmware staging.
"""

__version__ = "1.0.0"
