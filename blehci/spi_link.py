"""Framing of HCI traffic over the SPI link of BlueNRG-family modules."""

from __future__ import annotations

import abc
import enum
import time
from collections.abc import Callable, Iterator
from typing import Optional

READ_HEADER = bytes([0x0B, 0x00, 0x00, 0x00, 0x00])
WRITE_HEADER = bytes([0x0A, 0x00, 0x00, 0x00, 0x00])
HEADER_SIZE = 5
DEVICE_READY = 0x02
IRQ_TIMEOUT_MS = 1000
SPI_BUFFER_SIZE = 128
"""Bytes the receive buffer of an SPI transport holds."""

BLUE_INITIALIZE = bytes([0x04, 0xFF, 0x03, 0x01, 0x00, 0x01])

ENABLE_LL_ONLY = bytes([0x01, 0x0C, 0xFC, 0x03, 0x2C, 0x01, 0x01])
ACI_GATT_INIT = bytes([0x01, 0x01, 0xFD, 0x00])
ACI_GAP_INIT = bytes([0x01, 0x8A, 0xFC, 0x03, 0x0F, 0x00, 0x00])
ACI_READ_CONFIG_PARAMETER = bytes([0x01, 0x0D, 0xFC, 0x01, 0x80])

_HCI_EVENT_PKT = 0x04
_EVT_CMD_COMPLETE = 0x0E


class BLEChip(enum.Enum):
    """BLE modules that speak the SPI protocol."""

    SPBTLE_RF = 0
    SPBTLE_1S = 1
    BLUENRG_M2SP = 2
    BLUENRG_M0 = 3

    @property
    def reports_ready(self) -> bool:
        """True when the first header byte tells whether the device is ready."""
        return self in (BLEChip.SPBTLE_RF, BLEChip.BLUENRG_M0)

    @property
    def uses_irq_handshake(self) -> bool:
        """True when the device raises IRQ to signal it is ready for a write."""
        return self in (BLEChip.SPBTLE_1S, BLEChip.BLUENRG_M2SP)


class SpiBus(abc.ABC):
    """The pins and SPI peripheral a BLE module is wired to."""

    @abc.abstractmethod
    def begin(self) -> None:
        """Configure the chip-select and IRQ pins and start the SPI peripheral."""

    @abc.abstractmethod
    def end(self) -> None:
        """Stop the SPI peripheral."""

    @abc.abstractmethod
    def transfer(self, data: bytes) -> bytes:
        """Clock ``data`` out and return the bytes clocked in at the same time."""

    @abc.abstractmethod
    def select(self) -> None:
        """Begin a transaction and pull chip select low."""

    @abc.abstractmethod
    def deselect(self) -> None:
        """Release chip select and end the transaction."""

    @abc.abstractmethod
    def irq_level(self) -> int:
        """Current level (0 or 1) of the IRQ line."""

    @abc.abstractmethod
    def attach_interrupt(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` on each rising edge of the IRQ line."""

    @abc.abstractmethod
    def detach_interrupt(self) -> None:
        """Stop reacting to the IRQ line."""

    @abc.abstractmethod
    def reset_chip(self) -> None:
        """Pulse the module's reset line."""

    def delay(self, ms: int) -> None:
        """Sleep for ``ms`` milliseconds."""
        time.sleep(ms / 1000)

    def millis(self) -> int:
        """Milliseconds from an arbitrary fixed point."""
        return int(time.monotonic() * 1000)


def is_blue_initialize(event: bytes) -> bool:
    """True for the vendor event a module sends once it has booted."""
    return bytes(event) == BLUE_INITIALIZE


def is_command_complete(event: bytes, opcode_low: int, opcode_high: int, length: int) -> bool:
    """True for a successful Command Complete event of the given opcode and length."""
    event = bytes(event)
    if len(event) < length + 3:
        return False
    expected = bytes([_HCI_EVENT_PKT, _EVT_CMD_COMPLETE, length, 0x01, opcode_low, opcode_high, 0x00])
    return event[:7] == expected


class SpiLink:
    """Reads and writes HCI frames through the SPI header handshake."""

    def __init__(
        self,
        bus: SpiBus,
        ble_chip: BLEChip,
        irq_callback: Optional[Callable[[], None]] = None,
    ) -> None:
        self.bus = bus
        self.ble_chip = BLEChip(ble_chip)
        self._irq_callback = irq_callback if irq_callback is not None else self._on_irq
        self.data_available = False
        self.read_limit: Optional[int] = None
        """Cap on the payload bytes of the next frame from read_frames(), or None."""
        self.random_address: Optional[bytes] = None

    def _on_irq(self) -> None:
        self.data_available = True

    def exchange_header(self, header: bytes) -> bytes:
        """Send a five-byte header and return the one the device answered with."""
        header = bytes(header)
        if len(header) != HEADER_SIZE:
            raise ValueError(f"an SPI header is {HEADER_SIZE} bytes")
        return bytes(self.bus.transfer(header))

    def send(self, data: bytes, timeout: int = IRQ_TIMEOUT_MS) -> bool:
        """Make one attempt to write ``data``.

        Returns False when the device is not ready or lacks room for the data.
        Raises TimeoutError when the device does not raise IRQ within
        ``timeout`` milliseconds.
        """
        data = bytes(data)
        if self.ble_chip.reports_ready:
            self.bus.select()
            try:
                reply = self.exchange_header(WRITE_HEADER)
                if reply[0] != DEVICE_READY or reply[1] < len(data):
                    return False
                self.bus.transfer(data)
                return True
            finally:
                self.bus.deselect()

        start = self.bus.millis()
        self.bus.detach_interrupt()
        self.bus.select()
        try:
            while self.bus.irq_level() != 1:
                if self.bus.millis() - start > timeout:
                    raise TimeoutError("device did not signal it is ready for a write")
            reply = self.exchange_header(WRITE_HEADER)
            space = reply[1] | (reply[2] << 8)
            if space < len(data):
                return False
            self.bus.transfer(data)
            return True
        finally:
            self.bus.deselect()
            self.bus.attach_interrupt(self._irq_callback)

    def send_retrying(self, data: bytes) -> bool:
        """Write ``data``, retrying until accepted; False if the device timed out."""
        while True:
            try:
                if self.send(data):
                    return True
            except TimeoutError:
                return False

    def _read_transaction(self, limit: Optional[int]) -> bytes:
        handshake = self.ble_chip.uses_irq_handshake
        if handshake:
            self.bus.detach_interrupt()
        self.bus.select()
        try:
            reply = self.exchange_header(READ_HEADER)
            if self.ble_chip.reports_ready and reply[0] != DEVICE_READY:
                return b""
            count = reply[3] | (reply[4] << 8)
            if limit is not None and count > limit:
                count = max(limit, 0)
                # the rest stays in the device; come back for it
                self.data_available = True
            if not count:
                return b""
            return bytes(self.bus.transfer(b"\xff" * count))
        finally:
            self.bus.deselect()
            if handshake:
                self.bus.attach_interrupt(self._irq_callback)

    def _frames(self, limited: bool) -> Iterator[bytes]:
        while self.bus.irq_level() == 1:
            frame = self._read_transaction(self.read_limit if limited else None)
            if frame:
                yield frame

    def read_frames(self) -> Iterator[bytes]:
        """Yield frames while the device holds IRQ high, each capped by ``read_limit``."""
        return self._frames(limited=True)

    def wait_for_event(self, predicate: Callable[[bytes], bool]) -> bytes:
        """Block until a burst of frames holds one accepted by ``predicate``; return it."""
        while True:
            while not self.data_available:
                pass
            if self.bus.irq_level() == 0:
                continue
            self.data_available = False
            match: Optional[bytes] = None
            for frame in self._frames(limited=False):
                if predicate(frame):
                    match = frame
            if match is not None:
                return match

    def wait_for_blue_initialize(self) -> bytes:
        """Block until the module reports that it has booted."""
        return self.wait_for_event(is_blue_initialize)

    def _command(self, command: bytes, predicate: Callable[[bytes], bool]) -> bytes:
        if not self.send_retrying(command):
            raise TimeoutError("device did not accept the command")
        return self.wait_for_event(predicate)

    def enable_ll_only(self) -> bytes:
        """Switch the module's stack to link-layer-only mode."""
        return self._command(
            ENABLE_LL_ONLY, lambda event: is_command_complete(event, 0x0C, 0xFC, 0x04)
        )

    def aci_gatt_init(self) -> bytes:
        """Initialise the module's GATT layer."""
        return self._command(
            ACI_GATT_INIT, lambda event: is_command_complete(event, 0x01, 0xFD, 0x04)
        )

    def aci_gap_init(self) -> bytes:
        """Initialise the module's GAP layer, which activates its random address."""
        return self._command(
            ACI_GAP_INIT, lambda event: is_command_complete(event, 0x8A, 0xFC, 0x0A)
        )

    def aci_read_config_parameter(self) -> bytes:
        """Read the module's random static address and remember it."""
        if self.ble_chip.reports_ready:
            length, offset = 0x0A, 7
        else:
            length, offset = 0x0B, 8
        event = self._command(
            ACI_READ_CONFIG_PARAMETER,
            lambda frame: is_command_complete(frame, 0x0D, 0xFC, length),
        )
        self.random_address = event[offset:offset + 6]
        return self.random_address