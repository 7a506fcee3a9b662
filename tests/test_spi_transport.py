from collections import deque

import pytest

from blehci.spi_link import (
    ACI_GAP_INIT,
    ACI_GATT_INIT,
    ACI_READ_CONFIG_PARAMETER,
    BLUE_INITIALIZE,
    ENABLE_LL_ONLY,
    READ_HEADER,
    SPI_BUFFER_SIZE,
    WRITE_HEADER,
    BLEChip,
    SpiBus,
)
from blehci.spi_transport import SpiTransport

HCI_RESET = bytes([0x01, 0x03, 0x0C, 0x00])
RESET_COMPLETE = bytes([0x04, 0x0E, 0x04, 0x01, 0x03, 0x0C, 0x00])
LL_ONLY_COMPLETE = bytes([0x04, 0x0E, 0x04, 0x01, 0x0C, 0xFC, 0x00])
GATT_COMPLETE = bytes([0x04, 0x0E, 0x04, 0x01, 0x01, 0xFD, 0x00])
GAP_COMPLETE = bytes([0x04, 0x0E, 0x0A, 0x01, 0x8A, 0xFC, 0x00]) + bytes(6)
ADDRESS = bytes([0x01, 0x02, 0x03, 0x04, 0x05, 0x06])
CONFIG_COMPLETE_RF = bytes([0x04, 0x0E, 0x0A, 0x01, 0x0D, 0xFC, 0x00]) + ADDRESS
CONFIG_COMPLETE_1S = bytes([0x04, 0x0E, 0x0B, 0x01, 0x0D, 0xFC, 0x00, 0x06]) + ADDRESS


class FakeBus(SpiBus):
    def __init__(self, script=None, boot_frames=(), step=1):
        self.script = dict(script or {})
        self.boot_frames = list(boot_frames)
        self.frames = deque()
        self.written = []
        self.delays = []
        self.callback = None
        self.status = 0x02
        self.space = 0x7F
        self.handshake_ready = True
        self.selected = False
        self.started = False
        self.ended = False
        self.resets = 0
        self.clock = 0
        self.step = step
        self._mode = None
        self._current = b""
        self._missed = False

    def push(self, frame):
        self.frames.append(bytes(frame))
        if self.callback is not None:
            self.callback()
        else:
            self._missed = True

    def begin(self):
        self.started = True

    def end(self):
        self.ended = True

    def select(self):
        self.selected = True
        self._mode = None
        self._current = b""

    def deselect(self):
        if self._current:
            self.frames.appendleft(self._current)
        self._current = b""
        self._mode = None
        self.selected = False

    def transfer(self, data):
        data = bytes(data)
        if self._mode == "read":
            out = self._current[: len(data)]
            self._current = self._current[len(data):]
            self._mode = None
            return out
        if self._mode == "write":
            self._mode = None
            self.written.append(data)
            for frame in self.script.get(data, []):
                self.push(frame)
            return bytes(len(data))
        if data == READ_HEADER:
            if self.status != 0x02 or not self.frames:
                return bytes([self.status, 0, 0, 0, 0])
            frame = self.frames.popleft()
            self._current = frame
            self._mode = "read"
            return bytes([self.status, 0, 0, len(frame) & 0xFF, len(frame) >> 8])
        if data == WRITE_HEADER:
            if self.status != 0x02:
                return bytes([self.status, 0, 0, 0, 0])
            self._mode = "write"
            return bytes([self.status, self.space & 0xFF, self.space >> 8, 0, 0])
        return bytes(len(data))

    def irq_level(self):
        if self.selected:
            return 1 if self.handshake_ready else 0
        return 1 if self.frames else 0

    def attach_interrupt(self, callback):
        self.callback = callback
        if self._missed:
            self._missed = False
            callback()

    def detach_interrupt(self):
        self.callback = None

    def reset_chip(self):
        self.resets += 1
        for frame in self.boot_frames:
            self.push(frame)

    def delay(self, ms):
        self.delays.append(ms)

    def millis(self):
        self.clock += self.step
        return self.clock


def rf_script():
    return {
        HCI_RESET: [RESET_COMPLETE, BLUE_INITIALIZE],
        ENABLE_LL_ONLY: [LL_ONLY_COMPLETE],
        ACI_GATT_INIT: [GATT_COMPLETE],
        ACI_GAP_INIT: [GAP_COMPLETE],
        ACI_READ_CONFIG_PARAMETER: [CONFIG_COMPLETE_RF],
    }


def one_s_script():
    return {
        HCI_RESET: [RESET_COMPLETE],
        ACI_GATT_INIT: [GATT_COMPLETE],
        ACI_GAP_INIT: [GAP_COMPLETE],
        ACI_READ_CONFIG_PARAMETER: [CONFIG_COMPLETE_1S],
    }


def drain(transport):
    out = bytearray()
    while transport.available():
        out.append(transport.read())
    return bytes(out)


@pytest.fixture
def rf():
    bus = FakeBus(rf_script(), boot_frames=[BLUE_INITIALIZE])
    transport = SpiTransport(bus, BLEChip.SPBTLE_RF)
    assert transport.begin() is True
    return bus, transport


def started_rf(bus, transport):
    assert transport.write(HCI_RESET) == len(HCI_RESET)
    return drain(transport)


def test_begin_waits_for_blue_initialize(rf):
    bus, transport = rf
    assert bus.started
    assert bus.resets == 1
    assert not bus.frames
    assert transport.available() is False


def test_begin_handshake_chip_settles_after_reset():
    bus = FakeBus(one_s_script())
    transport = SpiTransport(bus, BLEChip.SPBTLE_1S)
    assert transport.begin() is True
    assert bus.delays == [300]
    assert bus.resets == 1


def test_reset_runs_start_up_sequence_for_rf_chip(rf):
    bus, transport = rf
    received = started_rf(bus, transport)
    assert received == RESET_COMPLETE + BLUE_INITIALIZE
    assert bus.written == [
        HCI_RESET,
        ENABLE_LL_ONLY,
        ACI_GATT_INIT,
        ACI_GAP_INIT,
        ACI_READ_CONFIG_PARAMETER,
    ]
    assert transport.random_address == ADDRESS


def test_reset_runs_start_up_sequence_for_handshake_chip():
    bus = FakeBus(one_s_script())
    transport = SpiTransport(bus, BLEChip.BLUENRG_M2SP)
    transport.begin()
    assert transport.write(HCI_RESET) == len(HCI_RESET)
    assert drain(transport) == RESET_COMPLETE
    assert bus.written == [HCI_RESET, ACI_GATT_INIT, ACI_GAP_INIT, ACI_READ_CONFIG_PARAMETER]
    assert bus.delays == [300, 300]
    assert transport.random_address == ADDRESS


def test_data_before_reset_is_held_back(rf):
    bus, transport = rf
    early = bytes([0x04, 0x05, 0x01, 0x00])
    bus.push(early)
    assert transport.available() is False
    assert transport.read() == -1
    assert transport.write(HCI_RESET) == len(HCI_RESET)
    assert drain(transport) == early + RESET_COMPLETE + BLUE_INITIALIZE


def test_empty_transport_reads_nothing(rf):
    _, transport = rf
    assert transport.peek() == -1
    assert transport.read() == -1


def test_peek_does_not_consume(rf):
    bus, transport = rf
    started_rf(bus, transport)
    bus.push(b"\x04\x0e\x01")
    assert transport.available() is True
    assert transport.peek() == 0x04
    assert transport.peek() == 0x04
    assert transport.read() == 0x04
    assert transport.peek() == 0x0E


def test_irq_low_reports_no_data(rf):
    bus, transport = rf
    started_rf(bus, transport)
    transport.irq_callback()
    assert transport.available() is False


def test_large_frame_is_read_in_buffer_sized_pieces(rf):
    bus, transport = rf
    started_rf(bus, transport)
    big = bytes(range(200))
    bus.push(big)
    assert transport.available() is True
    first = bytes(transport.read() for _ in range(SPI_BUFFER_SIZE))
    assert first == big[:SPI_BUFFER_SIZE]
    assert transport.read() == -1
    assert len(bus.frames) == 1
    assert drain(transport) == big[SPI_BUFFER_SIZE:]


def test_round_trip_after_start_up(rf):
    bus, transport = rf
    started_rf(bus, transport)
    packet = bytes([0x01, 0x01, 0x10, 0x00])
    reply = bytes([0x04, 0x0E, 0x04, 0x01, 0x01, 0x10, 0x00])
    bus.script[packet] = [reply]
    assert transport.write(packet) == len(packet)
    assert bus.written[-1] == packet
    assert drain(transport) == reply


def test_wait_returns_when_data_arrives(rf):
    bus, transport = rf
    started_rf(bus, transport)
    bus.push(b"\x04")
    transport.wait(100)
    assert transport.read() == 0x04


def test_write_fails_when_device_never_ready():
    bus = FakeBus(rf_script(), boot_frames=[BLUE_INITIALIZE], step=10)
    transport = SpiTransport(bus, BLEChip.BLUENRG_M0)
    transport.begin()
    bus.status = 0x00
    assert transport.write(HCI_RESET) == 0
    assert bus.written == []


def test_write_fails_when_device_lacks_room():
    bus = FakeBus(rf_script(), boot_frames=[BLUE_INITIALIZE], step=10)
    transport = SpiTransport(bus, BLEChip.SPBTLE_RF)
    transport.begin()
    bus.space = len(HCI_RESET) - 1
    assert transport.write(HCI_RESET) == 0
    assert bus.written == []


def test_write_fails_when_handshake_irq_never_rises():
    bus = FakeBus(one_s_script(), step=10)
    transport = SpiTransport(bus, BLEChip.SPBTLE_1S)
    transport.begin()
    bus.handshake_ready = False
    assert transport.write(HCI_RESET) == 0
    assert bus.written == []
    assert bus.callback is not None


def test_end_stops_bus_and_interrupt(rf):
    bus, transport = rf
    transport.end()
    assert bus.ended is True
    assert bus.callback is None