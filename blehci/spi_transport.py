"""Byte-stream HCI transport over the SPI link of BlueNRG-family modules."""

from __future__ import annotations

from typing import Optional

from .spi_link import (
    BLEChip,
    IRQ_TIMEOUT_MS,
    SPI_BUFFER_SIZE,
    SpiBus,
    SpiLink,
    is_blue_initialize,
    is_command_complete,
)

RESET_SETTLE_MS = 300
"""Milliseconds to let a module without a boot event settle after a reset."""

WRITE_TIMEOUT_MS = IRQ_TIMEOUT_MS
"""Milliseconds a write may keep retrying before it gives up."""

_NO_DATA = -1


class SpiTransport:
    """Buffers HCI bytes received from an SPI module and writes HCI packets to it.

    Until the controller has been reset by the host, received bytes are held
    back.  The reset is followed by the module-specific start-up commands, and
    only then does the held-back data become readable.
    """

    def __init__(self, bus: SpiBus, ble_chip: BLEChip) -> None:
        self.bus = bus
        self.ble_chip = BLEChip(ble_chip)
        self._link = SpiLink(bus, self.ble_chip, irq_callback=self.irq_callback)
        self._buffer = bytearray()
        self._read_index = 0
        self._initial = bytearray()
        self._initial_phase = True

    @property
    def random_address(self) -> Optional[bytes]:
        """Random static address read from the module during start-up."""
        return self._link.random_address

    def irq_callback(self) -> None:
        """Record a rising edge of the module's IRQ line."""
        self._link.data_available = True

    def begin(self) -> bool:
        """Reset the module and wait until it is ready."""
        self._buffer = bytearray()
        self._read_index = 0
        self._initial = bytearray()
        self._initial_phase = True

        self.bus.begin()
        self.bus.attach_interrupt(self.irq_callback)
        self.bus.reset_chip()

        if self.ble_chip.reports_ready:
            self._link.wait_for_blue_initialize()
        else:
            self.bus.delay(RESET_SETTLE_MS)
        return True

    def end(self) -> None:
        self.bus.detach_interrupt()
        self.bus.end()

    def wait(self, timeout: int) -> None:
        """Return once data is available or ``timeout`` milliseconds have passed."""
        start = self.bus.millis()
        while self.bus.millis() - start < timeout:
            if self.available():
                break

    def available(self) -> bool:
        """True when at least one received byte is ready to be read."""
        if self._read_index < len(self._buffer):
            return True
        if not self._link.data_available:
            return False
        if self.bus.irq_level() == 0:
            return False

        self._link.data_available = False
        reset_seen = False
        self._link.read_limit = self._room()
        for frame in self._link.read_frames():
            if self._initial_phase:
                self._initial += frame
                if self._is_reset_event(frame):
                    reset_seen = True
            else:
                self._buffer += frame
                if len(self._buffer) >= SPI_BUFFER_SIZE:
                    break
            self._link.read_limit = self._room()

        if reset_seen:
            self._finish_start_up()

        return self._read_index < len(self._buffer)

    def peek(self) -> int:
        """Next received byte without consuming it, or -1 when there is none."""
        if self._read_index < len(self._buffer):
            return self._buffer[self._read_index]
        return _NO_DATA

    def read(self) -> int:
        """Consume the next received byte, or return -1 when there is none."""
        if self._read_index >= len(self._buffer):
            return _NO_DATA
        value = self._buffer[self._read_index]
        self._read_index += 1
        if self._read_index == len(self._buffer):
            self._buffer = bytearray()
            self._read_index = 0
        return value

    def write(self, data: bytes) -> int:
        """Write one packet; return the number of bytes written (0 on failure)."""
        data = bytes(data)
        start = self.bus.millis()
        while True:
            try:
                accepted = self._link.send(data, IRQ_TIMEOUT_MS)
            except TimeoutError:
                return 0
            if self.bus.millis() - start > WRITE_TIMEOUT_MS:
                return 0
            if accepted:
                return len(data)

    def _room(self) -> int:
        used = len(self._initial) if self._initial_phase else len(self._buffer)
        return SPI_BUFFER_SIZE - used

    def _is_reset_event(self, frame: bytes) -> bool:
        if self.ble_chip.reports_ready:
            return is_blue_initialize(frame)
        return len(frame) == 7 and is_command_complete(frame, 0x03, 0x0C, 0x04)

    def _finish_start_up(self) -> None:
        if self.ble_chip.reports_ready:
            self._link.enable_ll_only()
        else:
            self.bus.delay(RESET_SETTLE_MS)

        self._link.aci_gatt_init()
        self._link.aci_gap_init()
        self._link.aci_read_config_parameter()

        self._buffer = self._initial
        self._read_index = 0
        self._initial = bytearray()
        self._initial_phase = False