"""
TestKit Device Configurator

Pushes a property map into the device under test:

    DUT:defaults            -> ok                 (no retry, aborts on failure)
    DUT:<key>=<value>       -> DUT:<key>=<value>  (echo must match)
    ...
    DUT:configured=1        -> DUT:configured=1   (sentinel, always last)

A property whose echo does not match is sent again; after
`mismatch_attempts` failed echoes the run aborts with PropertyMismatchError
and no further property is sent. Transport errors abort the run at once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, FrozenSet, List, Mapping, Optional

from ..communication.protocol import Message, ProtocolError, Target
from ..communication.transport_base import TransportError
from ..constants import (
    DEFAULTS_TIMEOUT,
    DEFAULT_REQUEST_RETRIES,
    MSG_CONFIGURED,
    MSG_DEFAULTS,
    PROPERTY_MISMATCH_ATTEMPTS,
    PROPERTY_TIMEOUT,
    REPLY_OK,
)
from ..controllers.device_session import DeviceSession

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration run aborted."""
    pass


class PropertyMismatchError(ConfigurationError):
    """The device kept echoing a different value for a property."""

    def __init__(self, key: str, expected: str, received: Optional[str]):
        self.key = key
        self.expected = expected
        self.received = received
        super().__init__(
            f"Property '{key}' was not accepted: expected '{expected}', device replied '{received}'"
        )


@dataclass(frozen=True)
class Property:
    """One key/value pair to configure."""
    key: str
    value: str

    @classmethod
    def from_value(cls, key: str, value: Any) -> "Property":
        return cls(key, normalize_value(value))

    def to_message(self) -> Message:
        return Message(Target.DEVICE, self.key, self.value)


class ConfigurationState(Enum):
    """Configurator run state."""
    IDLE = auto()
    SETTING_DEFAULTS = auto()
    APPLYING_PROPERTY = auto()
    DONE = auto()
    FAILED = auto()


@dataclass
class ConfiguratorConfig:
    """Configurator timing and queue rules."""
    defaults_timeout: float = DEFAULTS_TIMEOUT
    property_timeout: float = PROPERTY_TIMEOUT
    property_retries: int = DEFAULT_REQUEST_RETRIES
    mismatch_attempts: int = PROPERTY_MISMATCH_ATTEMPTS
    excluded_keys: FrozenSet[str] = frozenset({MSG_CONFIGURED})
    sentinel: Property = field(default_factory=lambda: Property(MSG_CONFIGURED, "1"))


def normalize_value(value: Any) -> str:
    """Render a property value the way the device stores it."""
    if value is True:
        return "1"
    if value is False:
        return "0"
    return str(value)


class Configurator:
    """
    Sequential property writer.

    Usage:
        configurator = Configurator(session)
        await configurator.configure({"mqtt_host": "broker", "mqtt_port": 1883})
    """

    def __init__(self, session: DeviceSession, config: Optional[ConfiguratorConfig] = None):
        self._session = session
        self._config = config or ConfiguratorConfig()
        self._state = ConfigurationState.IDLE
        self._current: Optional[Property] = None
        self._state_callbacks: List[Callable[[ConfigurationState, Optional[Property]], None]] = []

    @property
    def state(self) -> ConfigurationState:
        return self._state

    @property
    def current_property(self) -> Optional[Property]:
        return self._current

    def add_state_callback(
        self, callback: Callable[[ConfigurationState, Optional[Property]], None]
    ) -> None:
        """Add callback for state and current property changes."""
        if callback not in self._state_callbacks:
            self._state_callbacks.append(callback)

    def remove_state_callback(
        self, callback: Callable[[ConfigurationState, Optional[Property]], None]
    ) -> None:
        if callback in self._state_callbacks:
            self._state_callbacks.remove(callback)

    def build_queue(self, properties: Mapping[str, Any]) -> List[Property]:
        """Ordered properties to send: map order, filtered, sentinel last."""
        queue = [
            Property.from_value(key, value)
            for key, value in properties.items()
            if value is not None and key not in self._config.excluded_keys
        ]
        queue.append(self._config.sentinel)
        return queue

    async def configure(self, properties: Mapping[str, Any]) -> None:
        """
        Run a full configuration.

        Raises:
            ConfigurationError: If defaults cannot be set or a transport error occurs
            PropertyMismatchError: If a property is not accepted
        """
        logger.info(f"Beginning configuration with {len(properties)} properties")
        try:
            await self._set_defaults()

            queue = self.build_queue(properties)
            for prop in queue:
                await self._apply(prop)

            await self._session.flush()
        except ConfigurationError:
            self._set_state(ConfigurationState.FAILED)
            raise

        self._set_state(ConfigurationState.DONE)
        logger.info("Configuration finished")

    def begin_configuration(
        self,
        properties: Mapping[str, Any],
        callback: Callable[[Optional[Exception]], None],
    ) -> asyncio.Task:
        """
        Run configure() in a task and report through callback.

        The callback receives None on success or the raised exception.
        """
        async def run() -> None:
            error: Optional[Exception] = None
            try:
                await self.configure(properties)
            except Exception as e:
                error = e
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Configuration callback error: {e}")

        return asyncio.create_task(run())

    async def _set_defaults(self) -> None:
        self._set_state(ConfigurationState.SETTING_DEFAULTS)
        try:
            reply = await self._session.request(
                Message(Target.DEVICE, MSG_DEFAULTS),
                timeout=self._config.defaults_timeout,
                max_retries=0,
            )
        except (TransportError, ProtocolError) as e:
            raise ConfigurationError(
                f"Unable to set defaults before configuration: {e}"
            ) from e

        if reply != REPLY_OK:
            raise ConfigurationError(
                f"Unable to set defaults before configuration: device replied '{reply}'"
            )

    async def _apply(self, prop: Property) -> None:
        self._set_state(ConfigurationState.APPLYING_PROPERTY, prop)

        received: Optional[str] = None
        for attempt in range(1, self._config.mismatch_attempts + 1):
            logger.debug(f"Setting property {prop.key}={prop.value} (attempt {attempt})")
            try:
                received = await self._session.request(
                    prop.to_message(),
                    timeout=self._config.property_timeout,
                    max_retries=self._config.property_retries,
                )
            except (TransportError, ProtocolError) as e:
                raise ConfigurationError(f"Setting property '{prop.key}' failed: {e}") from e

            if received == prop.value:
                logger.info(f"Property '{prop.key}' set")
                return
            logger.warning(
                f"Property '{prop.key}' echoed '{received}', expected '{prop.value}'"
            )

        raise PropertyMismatchError(prop.key, prop.value, received)

    def _set_state(self, state: ConfigurationState, prop: Optional[Property] = None) -> None:
        self._state = state
        self._current = prop
        for callback in self._state_callbacks:
            try:
                callback(state, prop)
            except Exception as e:
                logger.error(f"Configuration state callback error: {e}")
