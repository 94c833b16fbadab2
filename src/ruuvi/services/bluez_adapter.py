import asyncio
import logging
from typing import Callable, Optional

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import AuthError, DBusError

from ruuvi.services.gateway import GatewayConnectionFailure

logger = logging.getLogger(__name__)

BLUEZ_SERVICE = "org.bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"


def bluez_adapter_path(adapter: str = "hci0") -> str:
    return f"/org/bluez/{adapter}"


class BluezAdapter:
    """
    System bus handle on one BlueZ adapter.

    open() powers the adapter on and watches it: when the adapter is removed,
    powered off or the bus connection drops, on_lost is called with the cause.
    All coroutines must run on the loop that owns the scanner.
    """

    def __init__(self, adapter: str, on_lost: Callable[[Exception], None]):
        self.adapter = adapter
        self.path = bluez_adapter_path(adapter)
        self._on_lost = on_lost
        self._bus: Optional[MessageBus] = None
        self._disconnect_task: Optional[asyncio.Future] = None
        self._closing = False

    async def open(self) -> None:
        try:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
            await self._power_on()
            self._bus.add_message_handler(self._on_message)
            await self._add_match(
                f"type='signal',sender='{BLUEZ_SERVICE}',"
                f"interface='{OBJECT_MANAGER_INTERFACE}',member='InterfacesRemoved'"
            )
            await self._add_match(
                f"type='signal',sender='{BLUEZ_SERVICE}',path='{self.path}',"
                f"interface='{PROPERTIES_INTERFACE}',member='PropertiesChanged'"
            )
        except (OSError, EOFError, AuthError, DBusError) as e:
            raise GatewayConnectionFailure(f"Could not reach BlueZ adapter {self.path}: {e}") from e
        self._disconnect_task = asyncio.ensure_future(self._bus.wait_for_disconnect())
        self._disconnect_task.add_done_callback(self._on_disconnect)

    async def close(self) -> None:
        self._closing = True
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None
        if self._disconnect_task is not None:
            self._disconnect_task.cancel()
            await asyncio.gather(self._disconnect_task, return_exceptions=True)
            self._disconnect_task = None

    async def _power_on(self):
        reply = await self._call(Message(
            destination=BLUEZ_SERVICE,
            path=self.path,
            interface=PROPERTIES_INTERFACE,
            member="Get",
            signature="ss",
            body=[ADAPTER_INTERFACE, "Powered"],
        ))
        if reply.body[0].value:
            return
        logger.info(f"[BlueZ] Powering on {self.path}")
        await self._call(Message(
            destination=BLUEZ_SERVICE,
            path=self.path,
            interface=PROPERTIES_INTERFACE,
            member="Set",
            signature="ssv",
            body=[ADAPTER_INTERFACE, "Powered", Variant("b", True)],
        ))

    async def _add_match(self, rule: str):
        await self._call(Message(
            destination="org.freedesktop.DBus",
            path="/org/freedesktop/DBus",
            interface="org.freedesktop.DBus",
            member="AddMatch",
            signature="s",
            body=[rule],
        ))

    async def _call(self, message: Message):
        reply = await self._bus.call(message)
        if reply.message_type == MessageType.ERROR:
            detail = reply.body[0] if reply.body else ""
            raise GatewayConnectionFailure(f"{message.member} on {self.path} failed: {reply.error_name} {detail}")
        return reply

    def _on_message(self, message):
        if message.message_type != MessageType.SIGNAL:
            return
        if message.member == "InterfacesRemoved":
            path, interfaces = message.body
            if path == self.path and ADAPTER_INTERFACE in interfaces:
                self._lost(GatewayConnectionFailure(f"Adapter {self.path} was removed"))
        elif message.member == "PropertiesChanged" and message.path == self.path:
            interface, changed = message.body[0], message.body[1]
            powered = changed.get("Powered")
            if interface == ADAPTER_INTERFACE and powered is not None and not powered.value:
                self._lost(GatewayConnectionFailure(f"Adapter {self.path} was powered off"))

    def _on_disconnect(self, task: asyncio.Future):
        if self._closing or task.cancelled():
            return
        error = task.exception()
        self._lost(GatewayConnectionFailure(f"System bus connection closed: {error or 'disconnected'}"))

    def _lost(self, error: Exception):
        if self._closing:
            return
        logger.error(f"[BlueZ] {error}")
        self._on_lost(error)
