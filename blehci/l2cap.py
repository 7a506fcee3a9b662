"""L2CAP signaling channel: connection parameter update requests."""

from __future__ import annotations

import struct
from typing import Protocol

SIGNALING_CID = 0x0005

CONNECTION_PARAMETER_UPDATE_REQUEST = 0x12
CONNECTION_PARAMETER_UPDATE_RESPONSE = 0x13

_HEADER = struct.Struct("<BBH")
_UPDATE_REQUEST = struct.Struct("<HHHH")
_UPDATE_REQUEST_PDU = struct.Struct("<BBHHHHH")
_UPDATE_RESPONSE_PDU = struct.Struct("<BBHH")

_ROLE_PERIPHERAL = 1
_RESULT_ACCEPTED = 0x0000
_RESULT_REJECTED = 0x0001


class HostController(Protocol):
    """The part of the HCI layer the signaling channel talks to."""

    def send_acl_pkt(self, handle: int, cid: int, data: bytes) -> object: ...

    def le_conn_update(
        self,
        handle: int,
        min_interval: int,
        max_interval: int,
        latency: int,
        supervision_timeout: int,
    ) -> object: ...


class L2CAPSignaling:
    """Negotiates connection parameters over the L2CAP signaling channel."""

    def __init__(self, hci: HostController) -> None:
        self.hci = hci
        self._min_interval = 0
        self._max_interval = 0
        self._supervision_timeout = 0

    def add_connection(
        self,
        handle: int,
        role: int,
        peer_bdaddr_type: int,
        peer_bdaddr: bytes,
        interval: int,
        latency: int,
        supervision_timeout: int,
        master_clock_accuracy: int,
    ) -> None:
        """Ask the central for preferred parameters when a link comes up as peripheral."""
        if role != _ROLE_PERIPHERAL:
            return

        update = False
        min_interval = max_interval = interval
        timeout = supervision_timeout

        if self._min_interval and self._max_interval:
            if not self._min_interval <= interval <= self._max_interval:
                min_interval = self._min_interval
                max_interval = self._max_interval
                update = True

        if self._supervision_timeout and supervision_timeout != self._supervision_timeout:
            timeout = self._supervision_timeout
            update = True

        if update:
            request = _UPDATE_REQUEST_PDU.pack(
                CONNECTION_PARAMETER_UPDATE_REQUEST,
                0x01,
                _UPDATE_REQUEST.size,
                min_interval,
                max_interval,
                0x0000,
                timeout,
            )
            self.hci.send_acl_pkt(handle, SIGNALING_CID, request)

    def handle_data(self, connection_handle: int, data: bytes) -> None:
        """Process one signaling PDU; malformed ones are ignored."""
        if len(data) < _HEADER.size:
            return
        code, identifier, length = _HEADER.unpack_from(data)
        if len(data) != _HEADER.size + length:
            return
        payload = bytes(data[_HEADER.size:])

        if code == CONNECTION_PARAMETER_UPDATE_REQUEST:
            self._connection_parameter_update_request(connection_handle, identifier, payload)
        elif code == CONNECTION_PARAMETER_UPDATE_RESPONSE:
            self._connection_parameter_update_response(connection_handle, identifier, payload)

    def remove_connection(self, handle: int, reason: int) -> None:
        """Forget a connection; no per-connection state is kept."""

    def set_connection_interval(self, min_interval: int, max_interval: int) -> None:
        """Set the accepted connection interval range (0 disables the check)."""
        self._min_interval = min_interval
        self._max_interval = max_interval

    def set_supervision_timeout(self, supervision_timeout: int) -> None:
        """Set the required supervision timeout (0 disables the check)."""
        self._supervision_timeout = supervision_timeout

    def _connection_parameter_update_request(
        self, handle: int, identifier: int, payload: bytes
    ) -> None:
        if len(payload) < _UPDATE_REQUEST.size:
            return
        min_interval, max_interval, latency, timeout = _UPDATE_REQUEST.unpack_from(payload)

        result = _RESULT_ACCEPTED
        if self._min_interval and self._max_interval:
            if min_interval < self._min_interval or max_interval > self._max_interval:
                result = _RESULT_REJECTED
        if self._supervision_timeout and timeout != self._supervision_timeout:
            result = _RESULT_REJECTED

        response = _UPDATE_RESPONSE_PDU.pack(
            CONNECTION_PARAMETER_UPDATE_RESPONSE, identifier, 2, result
        )
        self.hci.send_acl_pkt(handle, SIGNALING_CID, response)

        if result == _RESULT_ACCEPTED:
            self.hci.le_conn_update(handle, min_interval, max_interval, latency, timeout)

    def _connection_parameter_update_response(
        self, handle: int, identifier: int, payload: bytes
    ) -> None:
        """Responses to our own requests need no action."""