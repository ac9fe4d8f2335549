"""
TesterKit Device

High level operations on a connected TestKit, as requested by the UI or a
remote service. Every operation returns a reply payload:

    {"status": "success", ...}
    {"status": "error", "error": "<Name>: <message>"}

Only one long operation runs at a time; a failed operation puts the fixture
into fault state (blinking error LED) until the next operation starts.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from ..communication.protocol import Message, Target
from ..constants import (
    BOOTLOADER_MARKER_FILENAME,
    FIRMWARE_FILENAME,
    MSG_BOOTLOADER,
    MSG_CONFIGURED,
    MSG_DEFAULTS,
    MSG_FIRMWARE,
    MSG_FULL_ID,
    MSG_PING,
    MSG_RESTART,
    REPLY_OK,
)
from ..controllers.device_session import DeviceSession, SessionEvent
from ..utils.error_handler import ErrorHandler, error_reply, error_string, success_reply
from .configurator import Configurator, ConfiguratorConfig
from .measurements import Expectations
from .tester import Tester, TesterConfig

logger = logging.getLogger(__name__)


DEVICE_OCCUPIED = "device is occupied"

Reply = Dict[str, Any]


class DeviceError(Exception):
    """The fixture or the device answered an operation step unexpectedly."""
    pass


@dataclass
class TesterKitDeviceConfig:
    """Timing of the orchestrated operations (seconds)."""

    __test__ = False

    bootloader_timeout: float = 5.0
    bootloader_retries: int = 2
    bootloader_delay: float = 5.0
    settle_delay: float = 2.0
    check_id_timeout: float = 2.0
    backup_timeout: float = 30.0
    finish_bootloader_timeout: float = 7.5
    finish_bootloader_retries: int = 2
    finish_bootloader_delay: float = 10.0
    finish_ping_timeout: float = 2.0
    firmware_settle_delay: float = 10.0


class TesterKitDevice:
    """
    Operations on the TestKit bound to one session.

    Usage:
        device = TesterKitDevice(session, storage_path="/media/DEVICE")
        reply = await device.configure({"mqtt_host": "broker"})
    """

    __test__ = False

    def __init__(
        self,
        session: DeviceSession,
        config: Optional[TesterKitDeviceConfig] = None,
        configurator_config: Optional[ConfiguratorConfig] = None,
        tester_config: Optional[TesterConfig] = None,
        storage_path: Optional[Union[str, Path]] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self._session = session
        self._config = config or TesterKitDeviceConfig()
        self._configurator_config = configurator_config
        self._tester_config = tester_config
        self._storage_path = Path(storage_path) if storage_path else None
        self._error_handler = error_handler or ErrorHandler()

        self._occupied = False
        self._fault_state = False
        self._device_callbacks: List[Callable[[Optional[str]], None]] = []
        self._terminal_subscriptions: List[int] = []

    @property
    def session(self) -> DeviceSession:
        return self._session

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    @property
    def is_occupied(self) -> bool:
        return self._occupied

    @property
    def fault_state(self) -> bool:
        return self._fault_state

    @property
    def storage_path(self) -> Optional[Path]:
        return self._storage_path

    def set_storage_path(self, path: Optional[Union[str, Path]]) -> None:
        """Set the mount point of the device's mass storage."""
        self._storage_path = Path(path) if path else None

    def add_device_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        """Add callback receiving the full id (or None) found by check_device()."""
        if callback not in self._device_callbacks:
            self._device_callbacks.append(callback)

    def remove_device_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        if callback in self._device_callbacks:
            self._device_callbacks.remove(callback)

    # ------------------------------------------------------------------
    # Fault state
    # ------------------------------------------------------------------

    def set_fault_state(self) -> None:
        self._fault_state = True
        self._session.blink_error()

    async def reset_fault_state(self) -> None:
        self._fault_state = False
        await self._session.reset_leds()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def configure(self, properties: Mapping[str, Any]) -> Reply:
        """Switch the device to its bootloader and push the property map."""
        async def operation() -> Reply:
            await self._expect_ok(
                Message(Target.CONTROLLER, MSG_BOOTLOADER),
                "Cannot switch to bootloader",
                timeout=self._config.bootloader_timeout,
                max_retries=self._config.bootloader_retries,
                delay=self._config.bootloader_delay,
            )
            await asyncio.sleep(self._config.settle_delay)
            configurator = Configurator(self._session, self._configurator_config)
            await configurator.configure(properties)
            return success_reply()

        return await self._run_exclusive("configure", operation)

    async def test(self, expectations: Union[Expectations, Mapping[str, Any]]) -> Reply:
        """Restart the device and run the electrical test."""
        async def operation() -> Reply:
            if not isinstance(expectations, Expectations):
                table = Expectations.from_dict(expectations)
            else:
                table = expectations

            await self._expect_ok(
                Message(Target.CONTROLLER, MSG_RESTART),
                "Failed to restart before test",
            )
            result = await Tester(self._session, self._tester_config).run(table)
            if result.errors:
                return {"status": "error", "errors": list(result.errors)}
            return success_reply()

        return await self._run_exclusive("test", operation)

    async def get_device_id(self) -> Reply:
        """Read the full id of the device through its bootloader."""
        try:
            await self._expect_ok(
                Message(Target.CONTROLLER, MSG_BOOTLOADER),
                "Cannot switch to bootloader",
            )
            logger.debug("Opened bootloader, asking for full id")
            full_id = await self._session.request(Message(Target.DEVICE, MSG_FULL_ID))
        except Exception as e:
            self._error_handler.handle_exception(e)
            return error_reply(f"cannot get full id of the device - {error_string(e)}")

        logger.info(f"Retrieved full id: {full_id}")
        return success_reply(device_id=full_id)

    async def check_device(self) -> Optional[str]:
        """
        Look for a device in the fixture.

        Device callbacks receive the full id, or None for a device that does
        not answer (blank or dead). Nothing is reported when the fixture
        itself does not answer.
        """
        logger.info("Checking connected device")
        try:
            await self._expect_ok(
                Message(Target.CONTROLLER, MSG_BOOTLOADER),
                "Cannot switch to bootloader",
            )
        except Exception as e:
            logger.warning(f"Fixture did not open the bootloader: {error_string(e)}")
            return None

        try:
            full_id: Optional[str] = await self._session.request(
                Message(Target.DEVICE, MSG_FULL_ID),
                timeout=self._config.check_id_timeout,
            )
            logger.debug(f"Received full id: {full_id}")
        except Exception as e:
            logger.info(f"Device not responding, probably blank or dead: {error_string(e)}")
            full_id = None

        for callback in self._device_callbacks:
            try:
                callback(full_id)
            except Exception as e:
                logger.error(f"Device callback error: {e}")
        return full_id

    async def backup_device(self) -> Reply:
        """Make the device back up its firmware, then restart it."""
        async def operation() -> Reply:
            await self._expect_ok(
                Message(Target.DEVICE, MSG_FIRMWARE, "backup"),
                "Failed to do backup",
                timeout=self._config.backup_timeout,
            )
            await self._expect_ok(
                Message(Target.CONTROLLER, MSG_RESTART),
                "Failed to restart after backup",
            )
            return success_reply()

        return await self._run_exclusive("backup", operation)

    async def write_firmware(self, data: bytes) -> Reply:
        """Copy a firmware image to the device storage."""
        async def operation() -> Reply:
            await self._write_file(FIRMWARE_FILENAME, data)
            await asyncio.sleep(self._config.firmware_settle_delay)
            return success_reply(type="firmware")

        return await self._run_exclusive("write firmware", operation)

    async def write_bootloader(self, data: bytes) -> Reply:
        """Copy a bootloader image (with its marker file), then finish the install."""
        async def operation() -> Reply:
            await self._write_file(BOOTLOADER_MARKER_FILENAME, b"")
            await self._write_file(FIRMWARE_FILENAME, data)
            logger.debug("Bootloader upload finished")
            await self._finish_bootloader()
            return success_reply(type="bootloader")

        return await self._run_exclusive("write bootloader", operation)

    async def finish_bootloader(self) -> Reply:
        """Bring a freshly flashed bootloader into the configured state."""
        async def operation() -> Reply:
            await self._finish_bootloader()
            return success_reply(type="bootloader")

        return await self._run_exclusive("finish bootloader", operation)

    def attach_terminal(self, terminal: Callable[[str], None]) -> int:
        """Forward unsolicited messages to a terminal callback."""
        sub_id = self._session.subscribe(SessionEvent.MESSAGE, terminal)
        self._terminal_subscriptions.append(sub_id)
        return sub_id

    def detach_terminal(self) -> None:
        """Stop forwarding messages to every attached terminal."""
        for sub_id in self._terminal_subscriptions:
            self._session.unsubscribe(sub_id)
        self._terminal_subscriptions.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_exclusive(self, name: str, operation: Callable[[], Awaitable[Reply]]) -> Reply:
        if self._occupied:
            logger.warning(f"Cannot {name}: {DEVICE_OCCUPIED}")
            return error_reply(DEVICE_OCCUPIED)

        self._occupied = True
        logger.info(f"Starting {name}")
        try:
            if self._fault_state:
                await self.reset_fault_state()
            reply = await operation()
        except Exception as e:
            self._error_handler.handle_exception(e, f"{name} failed: {e}")
            reply = error_reply(e)
        finally:
            self._occupied = False

        if reply.get("status") == "success":
            logger.info(f"{name} finished")
            return reply

        # Exceptions are logged by the error handler; test failures are not
        if "errors" in reply:
            logger.error(f"{name} failed with {len(reply['errors'])} error(s)")
        self.set_fault_state()
        return reply

    async def _expect_ok(self, message: Message, failure: str, **kwargs) -> None:
        reply = await self._session.request(message, **kwargs)
        if reply != REPLY_OK:
            raise DeviceError(f"{failure}, got response: {reply}")

    async def _finish_bootloader(self) -> None:
        await self._expect_ok(
            Message(Target.CONTROLLER, MSG_BOOTLOADER),
            "Cannot switch to bootloader",
            timeout=self._config.finish_bootloader_timeout,
            max_retries=self._config.finish_bootloader_retries,
            delay=self._config.finish_bootloader_delay,
        )
        await self._expect_ok(
            Message(Target.DEVICE, MSG_PING),
            "Bootloader ping failed",
            timeout=self._config.finish_ping_timeout,
        )
        await self._expect_ok(Message(Target.DEVICE, MSG_DEFAULTS), "Cannot set defaults")

        reply = await self._session.request(Message(Target.DEVICE, MSG_CONFIGURED, "1"))
        if reply != "1":
            raise DeviceError(f"Cannot set configured, got response: {reply}")

    async def _write_file(self, filename: str, data: bytes) -> None:
        if self._storage_path is None:
            raise DeviceError("Device storage path is not set")
        target = self._storage_path / filename
        logger.debug(f"Writing {len(data)} bytes to {target}")
        await asyncio.to_thread(target.write_bytes, data)
