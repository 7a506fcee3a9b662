"""Host side of the HCI: commands, ACL data flow control and event dispatch."""

from __future__ import annotations

import struct
import time
from typing import Callable, Optional, Protocol, TextIO

from .hci_codec import (
    HCI_ACLDATA_PKT,
    HCI_EVENT_PKT,
    HCI_OE_USER_ENDED_CONNECTION,
    OCF_DISCONNECT,
    OCF_LE_CANCEL_CONN,
    OCF_LE_CONN_UPDATE,
    OCF_LE_CREATE_CONN,
    OCF_LE_READ_BUFFER_SIZE,
    OCF_LE_SET_ADVERTISE_ENABLE,
    OCF_LE_SET_ADVERTISING_DATA,
    OCF_LE_SET_ADVERTISING_PARAMETERS,
    OCF_LE_SET_RANDOM_ADDRESS,
    OCF_LE_SET_SCAN_ENABLE,
    OCF_LE_SET_SCAN_PARAMETERS,
    OCF_LE_SET_SCAN_RESPONSE_DATA,
    OCF_READ_BD_ADDR,
    OCF_READ_LOCAL_VERSION,
    OCF_READ_RSSI,
    OCF_RESET,
    OCF_SET_EVENT_MASK,
    OGF_HOST_CTL,
    OGF_INFO_PARAM,
    OGF_LE_CTL,
    OGF_LINK_CTL,
    OGF_STATUS_PARAM,
    RSSI_UNAVAILABLE,
    CommandComplete,
    CommandStatus,
    DisconnectionComplete,
    LeAdvertisingReport,
    LeBufferSize,
    LeConnectionComplete,
    LocalVersion,
    NumCompletedPackets,
    decode_acl_header,
    decode_event,
    decode_le_buffer_size,
    decode_local_version,
    decode_rssi,
    encode_acl_packet,
    encode_command,
    hex_dump,
    make_opcode,
)
from .l2cap import SIGNALING_CID

ATT_CID = 0x0004
"""L2CAP channel of the attribute protocol."""

ADVERTISING_DATA_MAX = 31
ACL_HEADER_OVERHEAD = 9
"""Bytes of an LE buffer taken by the ACL and L2CAP headers."""

_ACL_CONTINUATION = 0x01
_ACL_PREFIX = struct.Struct("<HH")
_L2CAP_REJECT = struct.Struct("<BBHHHH")
_NO_OPCODE = 0xFFFF
_STATUS_TIMEOUT = -1


class Transport(Protocol):
    def begin(self) -> object: ...

    def end(self) -> None: ...

    def wait(self, timeout: int) -> None: ...

    def available(self) -> int: ...

    def read(self) -> int: ...

    def write(self, data: bytes) -> int: ...


class HCIError(Exception):
    """A command failed or the controller did not answer in time."""

    def __init__(self, status: int, opcode: Optional[int] = None, message: str = "") -> None:
        self.status = status
        self.opcode = opcode
        if not message:
            if status == _STATUS_TIMEOUT:
                message = "command timed out"
            else:
                message = f"command failed with status 0x{status:02X}"
            if opcode is not None:
                message += f" (opcode 0x{opcode:04X})"
        super().__init__(message)


class HCI:
    """Talks to a BLE controller through a byte-oriented transport."""

    command_timeout = 1.0
    """Seconds to wait for a command to complete."""

    def __init__(self, transport=None, att=None, gap=None, l2cap=None) -> None:
        self._transport = transport
        self.att = att
        self.gap = gap
        self.l2cap = l2cap
        self._debug: Optional[TextIO] = None
        self._clock: Callable[[], float] = time.monotonic
        self._recv = bytearray()
        self._acl_buffer: Optional[bytearray] = None
        self._cmd_complete_opcode = _NO_OPCODE
        self._cmd_complete_status = _STATUS_TIMEOUT
        self._cmd_response = b""
        self._max_pkt = 0
        self._pending_pkt = 0

    @property
    def pending_packets(self) -> int:
        """ACL packets sent and not yet reported as completed."""
        return self._pending_pkt

    @property
    def max_packets(self) -> int:
        """ACL packets the controller can buffer (0 until the buffer size is read)."""
        return self._max_pkt

    def set_transport(self, transport: Transport) -> None:
        self._transport = transport

    def begin(self):
        """Start the transport and reset the receive state."""
        self._recv.clear()
        return self._transport.begin()

    def end(self) -> None:
        self._transport.end()

    def poll(self, timeout: int = 0) -> None:
        """Process every byte the transport has, waiting up to ``timeout`` first."""
        if timeout:
            self._transport.wait(timeout)

        while self._transport.available():
            byte = self._transport.read()
            self._recv.append(byte)
            kind = self._recv[0]

            if kind == HCI_ACLDATA_PKT:
                received = len(self._recv)
                if received > 5 and received >= 5 + (self._recv[3] | (self._recv[4] << 8)):
                    packet = bytes(self._recv)
                    self._recv.clear()
                    self._dump("HCI ACLDATA RX <- ", packet)
                    self._handle_acl_data(packet[1:])
            elif kind == HCI_EVENT_PKT:
                received = len(self._recv)
                if received > 3 and received >= 3 + self._recv[2]:
                    packet = bytes(self._recv)
                    self._recv.clear()
                    self._dump("HCI EVENT RX <- ", packet)
                    self._handle_event(packet[1:])
            else:
                self._recv.clear()
                if self._debug is not None:
                    self._debug.write(f"{byte:X}\n")

    def reset(self) -> None:
        self._command(make_opcode(OGF_HOST_CTL, OCF_RESET))

    def read_local_version(self) -> LocalVersion:
        response = self._command(make_opcode(OGF_INFO_PARAM, OCF_READ_LOCAL_VERSION))
        return decode_local_version(response)

    def read_bd_addr(self) -> bytes:
        response = self._command(make_opcode(OGF_INFO_PARAM, OCF_READ_BD_ADDR))
        if len(response) < 6:
            raise ValueError("packet too short: BD address")
        return bytes(response[:6])

    def read_rssi(self, handle: int) -> int:
        """RSSI of a connection, or 127 when it cannot be read."""
        opcode = make_opcode(OGF_STATUS_PARAM, OCF_READ_RSSI)
        status = self._send_command(opcode, struct.pack("<H", handle))
        if status != 0:
            return RSSI_UNAVAILABLE
        try:
            return decode_rssi(self._cmd_response, handle)
        except ValueError:
            return RSSI_UNAVAILABLE

    def set_event_mask(self, event_mask: int) -> None:
        self._command(make_opcode(OGF_HOST_CTL, OCF_SET_EVENT_MASK), struct.pack("<Q", event_mask))

    def read_le_buffer_size(self) -> LeBufferSize:
        """Read the LE buffer size; this also enables ACL flow control and sets the ATT MTU."""
        response = self._command(make_opcode(OGF_LE_CTL, OCF_LE_READ_BUFFER_SIZE))
        size = decode_le_buffer_size(response)
        self._max_pkt = size.max_pkt
        if self.att is not None:
            self.att.set_max_mtu(size.pkt_len - ACL_HEADER_OVERHEAD)
        return size

    def le_set_random_address(self, addr: bytes) -> None:
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_SET_RANDOM_ADDRESS), _address(addr))

    def le_set_advertising_parameters(
        self,
        min_interval: int,
        max_interval: int,
        adv_type: int,
        own_bdaddr_type: int,
        direct_bdaddr_type: int,
        direct_bdaddr: bytes,
        chan_map: int,
        filter_policy: int,
    ) -> None:
        parameters = struct.pack(
            "<HHBBB6sBB",
            min_interval,
            max_interval,
            adv_type,
            own_bdaddr_type,
            direct_bdaddr_type,
            _address(direct_bdaddr),
            chan_map,
            filter_policy,
        )
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISING_PARAMETERS), parameters)

    def le_set_advertising_data(self, data: bytes) -> None:
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISING_DATA), _advertising_block(data))

    def le_set_scan_response_data(self, data: bytes) -> None:
        self._command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_SCAN_RESPONSE_DATA), _advertising_block(data)
        )

    def le_set_advertise_enable(self, enable: int) -> None:
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISE_ENABLE), bytes([enable]))

    def le_set_scan_parameters(
        self,
        scan_type: int,
        interval: int,
        window: int,
        own_bdaddr_type: int,
        filter_policy: int,
    ) -> None:
        parameters = struct.pack(
            "<BHHBB", scan_type, interval, window, own_bdaddr_type, filter_policy
        )
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_SET_SCAN_PARAMETERS), parameters)

    def le_set_scan_enable(self, enabled: int, duplicates: int) -> None:
        self._command(
            make_opcode(OGF_LE_CTL, OCF_LE_SET_SCAN_ENABLE), bytes([enabled, duplicates])
        )

    def le_create_conn(
        self,
        interval: int,
        window: int,
        initiator_filter: int,
        peer_bdaddr_type: int,
        peer_bdaddr: bytes,
        own_bdaddr_type: int,
        min_interval: int,
        max_interval: int,
        latency: int,
        supervision_timeout: int,
        min_ce_length: int,
        max_ce_length: int,
    ) -> None:
        parameters = struct.pack(
            "<HHBB6sBHHHHHH",
            interval,
            window,
            initiator_filter,
            peer_bdaddr_type,
            _address(peer_bdaddr),
            own_bdaddr_type,
            min_interval,
            max_interval,
            latency,
            supervision_timeout,
            min_ce_length,
            max_ce_length,
        )
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_CREATE_CONN), parameters)

    def le_conn_update(
        self,
        handle: int,
        min_interval: int,
        max_interval: int,
        latency: int,
        supervision_timeout: int,
    ) -> None:
        parameters = struct.pack(
            "<HHHHHHH",
            handle,
            min_interval,
            max_interval,
            latency,
            supervision_timeout,
            0x0004,
            0x0006,
        )
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_CONN_UPDATE), parameters)

    def le_cancel_conn(self) -> None:
        self._command(make_opcode(OGF_LE_CTL, OCF_LE_CANCEL_CONN))

    def send_acl_pkt(self, handle: int, cid: int, data: bytes) -> None:
        """Send one L2CAP PDU, first waiting for a free controller buffer."""
        if not self._max_pkt:
            raise HCIError(
                _STATUS_TIMEOUT,
                message="controller buffer count unknown; read the LE buffer size first",
            )
        while self._pending_pkt >= self._max_pkt:
            self.poll()

        packet = encode_acl_packet(handle, cid, data)
        self._dump("HCI ACLDATA TX -> ", packet)
        self._pending_pkt += 1
        self._transport.write(packet)

    def disconnect(self, handle: int) -> None:
        parameters = struct.pack("<HB", handle, HCI_OE_USER_ENDED_CONNECTION)
        self._command(make_opcode(OGF_LINK_CTL, OCF_DISCONNECT), parameters)

    def debug(self, stream: TextIO) -> None:
        """Write a hex dump of every packet to ``stream``."""
        self._debug = stream

    def no_debug(self) -> None:
        self._debug = None

    def _command(self, opcode: int, parameters: bytes = b"") -> bytes:
        status = self._send_command(opcode, parameters)
        if status != 0:
            raise HCIError(status, opcode)
        return self._cmd_response

    def _send_command(self, opcode: int, parameters: bytes = b"") -> int:
        packet = encode_command(opcode, parameters)
        self._dump("HCI COMMAND TX -> ", packet)
        self._transport.write(packet)

        self._cmd_complete_opcode = _NO_OPCODE
        self._cmd_complete_status = _STATUS_TIMEOUT
        self._cmd_response = b""

        deadline = self._clock() + self.command_timeout
        while self._cmd_complete_opcode != opcode and self._clock() < deadline:
            self.poll()

        return self._cmd_complete_status

    def _handle_acl_data(self, pdata: bytes) -> None:
        if len(pdata) < _ACL_PREFIX.size:
            return
        raw_handle, dlen = _ACL_PREFIX.unpack_from(pdata)
        continuation = (raw_handle & 0xF000) >> 12 == _ACL_CONTINUATION

        if continuation:
            if self._acl_buffer is None:
                return
            self._acl_buffer += pdata[_ACL_PREFIX.size:_ACL_PREFIX.size + dlen]
            buffered_dlen = (int.from_bytes(self._acl_buffer[2:4], "little") + dlen) & 0xFFFF
            self._acl_buffer[2:4] = buffered_dlen.to_bytes(2, "little")
            packet = bytes(self._acl_buffer)
        else:
            packet = pdata

        try:
            header = decode_acl_header(packet)
        except ValueError:
            return

        if not header.is_complete:
            if not continuation:
                self._acl_buffer = bytearray(pdata[:_ACL_PREFIX.size + dlen])
            return

        if continuation:
            self._acl_buffer = None

        payload = packet[header.SIZE:header.SIZE + header.length]
        handle = header.connection_handle

        if header.cid == ATT_CID:
            if self.att is not None:
                self.att.handle_data(handle, payload)
        elif header.cid == SIGNALING_CID:
            if self.l2cap is not None:
                self.l2cap.handle_data(handle, payload)
        else:
            reject = _L2CAP_REJECT.pack(0x01, 0x00, 0x0006, 0x0002, header.cid, 0x0000)
            self.send_acl_pkt(handle, SIGNALING_CID, reject)

    def _handle_num_comp_pkts(self, handle: int, num_pkts: int) -> None:
        if num_pkts and self._pending_pkt > num_pkts:
            self._pending_pkt -= num_pkts
        else:
            self._pending_pkt = 0

    def _handle_event(self, pdata: bytes) -> None:
        try:
            event = decode_event(pdata)
        except ValueError:
            return

        if isinstance(event, DisconnectionComplete):
            if self.att is not None:
                self.att.remove_connection(event.handle, event.reason)
            if self.l2cap is not None:
                self.l2cap.remove_connection(event.handle, event.reason)
            if self.gap is not None and self.gap.advertising():
                self._send_command(
                    make_opcode(OGF_LE_CTL, OCF_LE_SET_ADVERTISE_ENABLE), b"\x01"
                )
        elif isinstance(event, CommandComplete):
            self._cmd_complete_opcode = event.opcode
            self._cmd_complete_status = event.status
            self._cmd_response = event.response
        elif isinstance(event, CommandStatus):
            self._cmd_complete_opcode = event.opcode
            self._cmd_complete_status = event.status
            self._cmd_response = b""
        elif isinstance(event, NumCompletedPackets):
            for handle, num_pkts in event.counts:
                self._handle_num_comp_pkts(handle, num_pkts)
        elif isinstance(event, LeConnectionComplete):
            if event.status == 0x00:
                arguments = (
                    event.handle,
                    event.role,
                    event.peer_bdaddr_type,
                    event.peer_bdaddr,
                    event.interval,
                    event.latency,
                    event.supervision_timeout,
                    event.master_clock_accuracy,
                )
                if self.att is not None:
                    self.att.add_connection(*arguments)
                if self.l2cap is not None:
                    self.l2cap.add_connection(*arguments)
        elif isinstance(event, LeAdvertisingReport):
            if event.num_reports == 0x01 and self.gap is not None:
                self.gap.handle_le_advertising_report(
                    event.type,
                    event.peer_bdaddr_type,
                    event.peer_bdaddr,
                    event.eir_data,
                    event.rssi,
                )

    def _dump(self, prefix: str, packet: bytes) -> None:
        if self._debug is not None:
            self._debug.write(hex_dump(prefix, packet) + "\n")
            self._debug.flush()


def _address(addr: bytes) -> bytes:
    addr = bytes(addr)
    if len(addr) != 6:
        raise ValueError("a Bluetooth device address is 6 bytes")
    return addr


def _advertising_block(data: bytes) -> bytes:
    data = bytes(data)
    if len(data) > ADVERTISING_DATA_MAX:
        raise ValueError(f"advertising data exceeds {ADVERTISING_DATA_MAX} bytes")
    return bytes([len(data)]) + data.ljust(ADVERTISING_DATA_MAX, b"\x00")