"""
TestKit Electrical Tester

Runs the fixed test sequence against the device under test:

    Pins Up            DUT:pins_up   -> ok  (or a bare DUT:ok)
    Measure Pins Up    ATE:meas_pins -> X:...;Y:...;Z:...
    Pins Down          DUT:pins_down -> ok  (or a bare DUT:ok)
    Measure Pins Down  ATE:meas_pins -> X:...;Y:...;Z:...
    Measure Power      ATE:meas_pwr  -> vbus=..;v3=..;curr=..;  (x4)

A failing step is recorded in the result and the sequence goes on, so a
partially broken device still gets a complete report. The measurements
are then evaluated against an expectation table.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..communication.protocol import Message, ProtocolError, Target
from ..communication.transport_base import TransportError
from ..constants import (
    MSG_MEASURE_PINS,
    MSG_MEASURE_POWER,
    MSG_PINS_DOWN,
    MSG_PINS_UP,
    PIN_STEP_TIMEOUT,
    POWER_STEP_TIMEOUT,
    REPLY_OK,
    TEST_STEP_RETRIES,
)
from ..controllers.device_session import DeviceSession, SessionEvent
from .measurements import (
    PIN_AXES,
    POWER_FIELDS,
    Expectations,
    PinPhase,
    TestResult,
    parse_pin_measurement,
    parse_power_measurement,
)

logger = logging.getLogger(__name__)


class TestStep(Enum):
    """Test sequence steps, in execution order."""
    PINS_HIGH = "Pins Up"
    MEASURE_HIGH = "Measure Pins Up"
    PINS_LOW = "Pins Down"
    MEASURE_LOW = "Measure Pins Down"
    MEASURE_POWER = "Measure Power"


TestStep.__test__ = False


STEP_MESSAGES = {
    TestStep.PINS_HIGH: Message(Target.DEVICE, MSG_PINS_UP),
    TestStep.MEASURE_HIGH: Message(Target.CONTROLLER, MSG_MEASURE_PINS),
    TestStep.PINS_LOW: Message(Target.DEVICE, MSG_PINS_DOWN),
    TestStep.MEASURE_LOW: Message(Target.CONTROLLER, MSG_MEASURE_PINS),
    TestStep.MEASURE_POWER: Message(Target.CONTROLLER, MSG_MEASURE_POWER),
}


@dataclass
class TesterConfig:
    """Per-step timing."""

    __test__ = False

    pin_timeout: float = PIN_STEP_TIMEOUT
    power_timeout: float = POWER_STEP_TIMEOUT
    retries: int = TEST_STEP_RETRIES


class StepError(Exception):
    """A test step did not produce a usable reply."""
    pass


class Tester:
    """
    Electrical test runner.

    Usage:
        tester = Tester(session)
        result = await tester.run(Expectations.from_dict(table))
        if not result.passed:
            print(result.errors)
    """

    __test__ = False

    def __init__(self, session: DeviceSession, config: Optional[TesterConfig] = None):
        self._session = session
        self._config = config or TesterConfig()
        self._current_step: Optional[TestStep] = None
        self.result: Optional[TestResult] = None

    @property
    def current_step(self) -> Optional[TestStep]:
        return self._current_step

    async def run(self, expectations: Expectations) -> TestResult:
        """Run every step, evaluate and return the frozen result."""
        logger.info("Beginning test")
        result = TestResult()
        self.result = result

        for step in TestStep:
            self._current_step = step
            logger.info(f"Beginning test step: {step.value}")
            try:
                await self._run_step(step, result)
            except (StepError, TransportError, ProtocolError) as e:
                result.add_error(f"Test '{step.value}' failed: {e}")
                logger.error(f"Test '{step.value}' failed - skipping")

        self._current_step = None
        evaluate(result, expectations)
        logger.info(f"Test finished with {len(result.errors)} error(s)")
        return result

    def begin_test(
        self,
        expectations: Expectations,
        callback: Callable[[Optional[List[str]]], None],
    ) -> asyncio.Task:
        """
        Run the test in a task and report through callback.

        The callback receives the error list, or None when the test passed.
        """
        async def run() -> None:
            result = await self.run(expectations)
            try:
                callback(list(result.errors) if result.errors else None)
            except Exception as e:
                logger.error(f"Test callback error: {e}")

        return asyncio.create_task(run())

    async def _run_step(self, step: TestStep, result: TestResult) -> None:
        timeout = (
            self._config.power_timeout
            if step == TestStep.MEASURE_POWER
            else self._config.pin_timeout
        )
        if step in (TestStep.PINS_HIGH, TestStep.PINS_LOW):
            reply = await self._acknowledged(STEP_MESSAGES[step], timeout)
        else:
            reply = await self._session.request(
                STEP_MESSAGES[step],
                timeout=timeout,
                max_retries=self._config.retries,
            )
        logger.debug(f"Test step '{step.value}' reply: {reply}")

        if step in (TestStep.PINS_HIGH, TestStep.PINS_LOW):
            if reply != REPLY_OK:
                raise StepError(f"unexpected reply '{reply}'")
        elif step == TestStep.MEASURE_HIGH:
            result.pin_measurements[PinPhase.UP] = parse_pin_measurement(PinPhase.UP, reply)
        elif step == TestStep.MEASURE_LOW:
            result.pin_measurements[PinPhase.DOWN] = parse_pin_measurement(PinPhase.DOWN, reply)
        elif step == TestStep.MEASURE_POWER:
            result.power_measurements = parse_power_measurement(reply)

    async def _acknowledged(self, message: Message, timeout: float) -> str:
        """
        Send a pin command and wait for its acknowledgement.

        Device firmware answers either "DUT:pins_up=ok" or a bare "DUT:ok".
        The bare form has no type to correlate with and arrives as an
        unsolicited message.
        """
        bare_ok = asyncio.get_running_loop().create_future()
        bare_line = Message(message.target, REPLY_OK).encode()

        def on_message(line: str) -> None:
            if line == bare_line and not bare_ok.done():
                bare_ok.set_result(REPLY_OK)

        request = self._session.send(message, timeout=timeout, max_retries=self._config.retries)
        sub_id = self._session.subscribe(SessionEvent.MESSAGE, on_message)
        try:
            await asyncio.wait({request, bare_ok}, return_when=asyncio.FIRST_COMPLETED)
            if bare_ok.done():
                return bare_ok.result()
            return request.result()
        finally:
            self._session.unsubscribe(sub_id)
            request.cancel()
            bare_ok.cancel()


def evaluate(result: TestResult, expectations: Expectations) -> TestResult:
    """
    Compare the measurements with the expectations and freeze the result.

    Only phases and sources named in the expectations are checked.
    """
    for phase, axes in expectations.pins.items():
        measurement = result.pin_measurements.get(phase)
        if measurement is None:
            result.add_error(f"Missing '{phase.value}' pin measurement.")
            continue

        for axis in PIN_AXES:
            measured = measurement.axis(axis)
            for index, expected in enumerate(axes.get(axis, ())):
                if index >= len(measured):
                    result.add_error(
                        f"Pin '{axis}{index}' is undefined, perhaps missing from the "
                        f"measurement. (index starts from zero)"
                    )
                elif measured[index] != expected:
                    result.add_error(
                        f"Pin '{axis}{index}' is {measured[index]}, when it should be "
                        f"{expected}. (index starts from zero)"
                    )

    for source, ranges in expectations.power.items():
        measurement = result.power_measurements.get(source)
        if measurement is None:
            result.add_error(f"Missing '{source.value}' power measurement.")
            continue

        for name in POWER_FIELDS:
            value = measurement.value(name)
            if value is None:
                result.add_error(f"Value of '{name}' for source '{source.value}' is undefined")
                continue

            wanted = ranges.get(name)
            if wanted is None:
                continue
            if wanted.min is not None and value < wanted.min:
                result.add_error(
                    f"Value of '{name}' for source '{source.value}' is {value}, "
                    f"minimal allowed value is {wanted.min}"
                )
            if wanted.max is not None and value > wanted.max:
                result.add_error(
                    f"Value of '{name}' for source '{source.value}' is {value}, "
                    f"maximal allowed value is {wanted.max}"
                )

    result.freeze()
    return result
