"""
TestKit Measurement Model

Data structures and parsers for the replies of the electrical test:
- pin measurements: "X:0101...;Y:...;Z:..." (one bit per pin)
- power measurements: "vbus=5.01;v3=3.30;curr=0.12;" repeated for every
  power source in device order
- expectation tables the measurements are evaluated against
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


PIN_AXES = ("x", "y", "z")
POWER_FIELDS = ("vbus", "v3", "curr")


class PinPhase(Enum):
    """Pin state the device was asked to drive."""
    UP = "up"
    DOWN = "down"


class PowerSource(Enum):
    """Power inputs measured by the fixture."""
    ACTIVE_POE = "poe_act"
    PASSIVE_POE = "poe_pas"
    EXTERNAL = "ext_pwr"
    USB = "usb_pwr"


# Order of the triples in a meas_pwr reply
POWER_REPLY_ORDER = (
    PowerSource.USB,
    PowerSource.EXTERNAL,
    PowerSource.PASSIVE_POE,
    PowerSource.ACTIVE_POE,
)


@dataclass
class PinMeasurement:
    """Measured pin bits of one phase."""
    phase: PinPhase
    x: List[int] = field(default_factory=list)
    y: List[int] = field(default_factory=list)
    z: List[int] = field(default_factory=list)

    def axis(self, name: str) -> List[int]:
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            **{axis: "".join(str(bit) for bit in self.axis(axis)) for axis in PIN_AXES},
        }


@dataclass
class PowerMeasurement:
    """Measured values of one power source; None means undefined."""
    source: PowerSource
    vbus: Optional[float] = None
    v3: Optional[float] = None
    curr: Optional[float] = None

    def value(self, name: str) -> Optional[float]:
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source.value, **{name: self.value(name) for name in POWER_FIELDS}}


@dataclass(frozen=True)
class PowerRange:
    """Allowed range of one power value; a missing bound is not checked."""
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass
class Expectations:
    """Expected pin bits per phase and power ranges per source."""
    pins: Dict[PinPhase, Dict[str, Tuple[int, ...]]] = field(default_factory=dict)
    power: Dict[PowerSource, Dict[str, PowerRange]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expectations":
        """
        Build expectations from a config dictionary.

        Expected shape:
            {"pins": {"up": {"x": "1111...", "y": [1, 1, ...], "z": ...}},
             "power": {"usb_pwr": {"vbus": {"min": 4.5, "max": 5.5}, ...}}}

        Raises:
            ValueError: On unknown phases, axes, sources or fields, or bad bits
        """
        unknown = set(data) - {"pins", "power"}
        if unknown:
            raise ValueError(f"Unknown expectation sections: {sorted(unknown)}")

        pins: Dict[PinPhase, Dict[str, Tuple[int, ...]]] = {}
        for phase_name, axes in (data.get("pins") or {}).items():
            phase = _enum_value(PinPhase, phase_name, "pin phase")
            pins[phase] = {}
            for axis, bits in (axes or {}).items():
                axis = str(axis).lower()
                if axis not in PIN_AXES:
                    raise ValueError(f"Unknown pin axis '{axis}' in phase '{phase.value}'")
                pins[phase][axis] = _normalize_bits(bits)

        power: Dict[PowerSource, Dict[str, PowerRange]] = {}
        for source_name, fields in (data.get("power") or {}).items():
            source = _enum_value(PowerSource, source_name, "power source")
            power[source] = {}
            for name, bounds in (fields or {}).items():
                if name not in POWER_FIELDS:
                    raise ValueError(f"Unknown power field '{name}' for source '{source.value}'")
                bounds = bounds or {}
                power[source][name] = PowerRange(
                    min=_optional_float(bounds.get("min")),
                    max=_optional_float(bounds.get("max")),
                )

        return cls(pins=pins, power=power)


@dataclass
class TestResult:
    """Measurements and errors of one test run."""
    __test__ = False

    pin_measurements: Dict[PinPhase, PinMeasurement] = field(default_factory=dict)
    power_measurements: Dict[PowerSource, PowerMeasurement] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    evaluated: bool = False

    @property
    def passed(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        if self.evaluated:
            raise RuntimeError("Test result is already evaluated")
        logger.warning(error)
        self.errors.append(error)

    def freeze(self) -> None:
        """Mark the result as evaluated; errors become read-only."""
        self.errors = tuple(self.errors)
        self.evaluated = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "errors": list(self.errors),
            "pins": [m.to_dict() for m in self.pin_measurements.values()],
            "power": [m.to_dict() for m in self.power_measurements.values()],
        }


def parse_pin_measurement(phase: PinPhase, value: str) -> PinMeasurement:
    """
    Parse a meas_pins reply value.

    Each ';' separated part names its axis before ':'; characters other
    than '1' read as 0. Axes missing from the reply stay empty.
    """
    measurement = PinMeasurement(phase=phase)
    for part in value.split(";"):
        part = part.strip()
        if ":" not in part:
            continue
        axis = part[:part.index(":")].lower()
        if axis not in PIN_AXES:
            logger.debug(f"Ignoring unknown pin axis in '{part}'")
            continue
        bits = part[part.rindex(":") + 1:]
        setattr(measurement, axis, [1 if char == "1" else 0 for char in bits])
    return measurement


def parse_power_measurement(value: str) -> Dict[PowerSource, PowerMeasurement]:
    """
    Parse a meas_pwr reply value.

    The reply holds vbus/v3/curr triples for USB, external, passive PoE and
    active PoE in that order. Missing or non-numeric values become None.
    """
    if value.endswith(";"):
        value = value[:-1]
    parts = value.split(";") if value else []

    result: Dict[PowerSource, PowerMeasurement] = {}
    for source in POWER_REPLY_ORDER:
        measurement = PowerMeasurement(source=source)
        for name in POWER_FIELDS:
            part = parts.pop(0) if parts else ""
            setattr(measurement, name, _parse_number(part))
        result[source] = measurement
    return result


def _parse_number(part: str) -> Optional[float]:
    text = part.split("=", 1)[1] if "=" in part else part
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number):
        return None
    return number


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Range bound must be a number, got {value!r}")


def _normalize_bits(bits: Any) -> Tuple[int, ...]:
    if isinstance(bits, str):
        items = list(bits)
    elif isinstance(bits, (list, tuple)):
        items = list(bits)
    else:
        raise ValueError(f"Pin bits must be a string or a list, got {type(bits).__name__}")

    result = []
    for item in items:
        if item in ("1", 1, True):
            result.append(1)
        elif item in ("0", 0, False):
            result.append(0)
        else:
            raise ValueError(f"Invalid pin bit {item!r}")
    return tuple(result)


def _enum_value(enum_cls, name: Any, what: str):
    try:
        return enum_cls(name)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Unknown {what} '{name}' (allowed: {allowed})")
