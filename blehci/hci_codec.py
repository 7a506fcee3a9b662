"""Wire formats of HCI command, ACL data and event packets."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import ClassVar, Union

HCI_COMMAND_PKT = 0x01
HCI_ACLDATA_PKT = 0x02
HCI_EVENT_PKT = 0x04

EVT_DISCONN_COMPLETE = 0x05
EVT_CMD_COMPLETE = 0x0E
EVT_CMD_STATUS = 0x0F
EVT_NUM_COMP_PKTS = 0x13
EVT_LE_META_EVENT = 0x3E

EVT_LE_CONN_COMPLETE = 0x01
EVT_LE_ADVERTISING_REPORT = 0x02

OGF_LINK_CTL = 0x01
OGF_HOST_CTL = 0x03
OGF_INFO_PARAM = 0x04
OGF_STATUS_PARAM = 0x05
OGF_LE_CTL = 0x08

OCF_DISCONNECT = 0x0006

OCF_SET_EVENT_MASK = 0x0001
OCF_RESET = 0x0003

OCF_READ_LOCAL_VERSION = 0x0001
OCF_READ_BD_ADDR = 0x0009

OCF_READ_RSSI = 0x0005

OCF_LE_READ_BUFFER_SIZE = 0x0002
OCF_LE_SET_RANDOM_ADDRESS = 0x0005
OCF_LE_SET_ADVERTISING_PARAMETERS = 0x0006
OCF_LE_SET_ADVERTISING_DATA = 0x0008
OCF_LE_SET_SCAN_RESPONSE_DATA = 0x0009
OCF_LE_SET_ADVERTISE_ENABLE = 0x000A
OCF_LE_SET_SCAN_PARAMETERS = 0x000B
OCF_LE_SET_SCAN_ENABLE = 0x000C
OCF_LE_CREATE_CONN = 0x000D
OCF_LE_CANCEL_CONN = 0x000E
OCF_LE_CONN_UPDATE = 0x0013

HCI_OE_USER_ENDED_CONNECTION = 0x13

RSSI_UNAVAILABLE = 127
"""Value reported when the RSSI of a connection cannot be read."""

_COMMAND_HEADER = struct.Struct("<BHB")
_ACL_PACKET_HEADER = struct.Struct("<BHHHH")
_ACL_HEADER = struct.Struct("<HHHH")
_EVENT_HEADER = struct.Struct("<BB")
_CMD_COMPLETE = struct.Struct("<BHB")
_CMD_STATUS = struct.Struct("<BBH")
_DISCONN_COMPLETE = struct.Struct("<BHB")
_NUM_COMP_ENTRY = struct.Struct("<HH")
_LE_CONN_COMPLETE = struct.Struct("<BHBB6sHHHB")
_LE_ADV_REPORT = struct.Struct("<BBB6sB")
_LOCAL_VERSION = struct.Struct("<BHBHH")
_LE_BUFFER_SIZE = struct.Struct("<HB")
_READ_RSSI = struct.Struct("<Hb")


def _unpack(layout: struct.Struct, data: bytes, offset: int = 0) -> tuple:
    try:
        return layout.unpack_from(data, offset)
    except struct.error as exc:
        raise ValueError(f"packet too short: {exc}") from None


@dataclass(frozen=True)
class LocalVersion:
    """Controller version information."""

    hci_version: int
    hci_revision: int
    lmp_version: int
    manufacturer: int
    lmp_subversion: int


@dataclass(frozen=True)
class LeBufferSize:
    """Size and count of the controller's LE ACL data buffers."""

    pkt_len: int
    max_pkt: int


@dataclass(frozen=True)
class AclHeader:
    """ACL data header followed by the L2CAP basic header."""

    SIZE: ClassVar[int] = _ACL_HEADER.size

    handle: int
    dlen: int
    length: int
    cid: int

    @property
    def connection_handle(self) -> int:
        return self.handle & 0x0FFF

    @property
    def flags(self) -> int:
        return (self.handle & 0xF000) >> 12

    @property
    def is_complete(self) -> bool:
        """True when the data length covers the whole L2CAP payload."""
        return self.dlen - 4 == self.length

    def pack(self) -> bytes:
        return _ACL_HEADER.pack(self.handle, self.dlen, self.length, self.cid)


@dataclass(frozen=True)
class CommandComplete:
    code: ClassVar[int] = EVT_CMD_COMPLETE

    ncmd: int
    opcode: int
    status: int
    response: bytes


@dataclass(frozen=True)
class CommandStatus:
    code: ClassVar[int] = EVT_CMD_STATUS

    status: int
    ncmd: int
    opcode: int


@dataclass(frozen=True)
class DisconnectionComplete:
    code: ClassVar[int] = EVT_DISCONN_COMPLETE

    status: int
    handle: int
    reason: int


@dataclass(frozen=True)
class NumCompletedPackets:
    code: ClassVar[int] = EVT_NUM_COMP_PKTS

    counts: tuple[tuple[int, int], ...]


@dataclass(frozen=True)
class LeConnectionComplete:
    code: ClassVar[int] = EVT_LE_META_EVENT
    subevent: ClassVar[int] = EVT_LE_CONN_COMPLETE

    status: int
    handle: int
    role: int
    peer_bdaddr_type: int
    peer_bdaddr: bytes
    interval: int
    latency: int
    supervision_timeout: int
    master_clock_accuracy: int


@dataclass(frozen=True)
class LeAdvertisingReport:
    code: ClassVar[int] = EVT_LE_META_EVENT
    subevent: ClassVar[int] = EVT_LE_ADVERTISING_REPORT

    num_reports: int
    type: int
    peer_bdaddr_type: int
    peer_bdaddr: bytes
    eir_data: bytes
    rssi: int


Event = Union[
    CommandComplete,
    CommandStatus,
    DisconnectionComplete,
    NumCompletedPackets,
    LeConnectionComplete,
    LeAdvertisingReport,
]


def make_opcode(ogf: int, ocf: int) -> int:
    """Combine an opcode group field and command field into an opcode."""
    return (ogf << 10) | ocf


def encode_command(opcode: int, parameters: bytes = b"") -> bytes:
    """Build a complete HCI command packet, packet type byte included."""
    parameters = bytes(parameters)
    if len(parameters) > 0xFF:
        raise ValueError("command parameters exceed 255 bytes")
    return _COMMAND_HEADER.pack(HCI_COMMAND_PKT, opcode, len(parameters)) + parameters


def encode_acl_packet(handle: int, cid: int, payload: bytes) -> bytes:
    """Build an ACL data packet carrying one L2CAP PDU on channel ``cid``."""
    payload = bytes(payload)
    plen = len(payload)
    if plen > 0xFF:
        raise ValueError("ACL payload exceeds 255 bytes")
    dlen = (plen + 4) & 0xFF
    return _ACL_PACKET_HEADER.pack(HCI_ACLDATA_PKT, handle, dlen, plen, cid) + payload


def decode_acl_header(data: bytes) -> AclHeader:
    """Decode the header of an ACL packet given without its packet type byte."""
    return AclHeader(*_unpack(_ACL_HEADER, data))


def _decode_le_meta(params: bytes) -> Event | None:
    if not params:
        raise ValueError("packet too short: missing LE subevent")
    subevent = params[0]
    base = 1
    if subevent == EVT_LE_CONN_COMPLETE:
        return LeConnectionComplete(*_unpack(_LE_CONN_COMPLETE, params, base))
    if subevent == EVT_LE_ADVERTISING_REPORT:
        num_reports, adv_type, addr_type, addr, eir_length = _unpack(
            _LE_ADV_REPORT, params, base
        )
        eir_start = base + _LE_ADV_REPORT.size
        rssi_index = eir_start + eir_length
        if rssi_index >= len(params):
            raise ValueError("packet too short: advertising report truncated")
        rssi = struct.unpack_from("<b", params, rssi_index)[0]
        return LeAdvertisingReport(
            num_reports, adv_type, addr_type, addr, bytes(params[eir_start:rssi_index]), rssi
        )
    return None


def decode_event(data: bytes) -> Event | None:
    """Decode an event packet given without its packet type byte.

    Returns None for events this host does not handle.
    """
    data = bytes(data)
    evt, plen = _unpack(_EVENT_HEADER, data)
    params = data[_EVENT_HEADER.size:]

    if evt == EVT_DISCONN_COMPLETE:
        return DisconnectionComplete(*_unpack(_DISCONN_COMPLETE, params))
    if evt == EVT_CMD_COMPLETE:
        if plen < _CMD_COMPLETE.size:
            raise ValueError("packet too short: command complete")
        ncmd, opcode, status = _unpack(_CMD_COMPLETE, params)
        response = params[_CMD_COMPLETE.size:plen]
        return CommandComplete(ncmd, opcode, status, response)
    if evt == EVT_CMD_STATUS:
        return CommandStatus(*_unpack(_CMD_STATUS, params))
    if evt == EVT_NUM_COMP_PKTS:
        if not params:
            raise ValueError("packet too short: missing handle count")
        num_handles = params[0]
        counts = tuple(
            _unpack(_NUM_COMP_ENTRY, params, 1 + index * _NUM_COMP_ENTRY.size)
            for index in range(num_handles)
        )
        return NumCompletedPackets(counts)
    if evt == EVT_LE_META_EVENT:
        return _decode_le_meta(params)
    return None


def decode_local_version(data: bytes) -> LocalVersion:
    """Decode the response to Read Local Version Information."""
    return LocalVersion(*_unpack(_LOCAL_VERSION, data))


def decode_le_buffer_size(data: bytes) -> LeBufferSize:
    """Decode the response to LE Read Buffer Size."""
    return LeBufferSize(*_unpack(_LE_BUFFER_SIZE, data))


def decode_rssi(data: bytes, handle: int) -> int:
    """Decode the response to Read RSSI; 127 if it belongs to another handle."""
    response_handle, rssi = _unpack(_READ_RSSI, data)
    return rssi if response_handle == handle else RSSI_UNAVAILABLE


def hex_dump(prefix: str, data: bytes) -> str:
    """Render a packet as the prefix followed by two upper-case hex digits per byte."""
    return prefix + bytes(data).hex().upper()