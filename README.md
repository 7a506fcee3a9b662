# blehci

The core of a Bluetooth Low Energy host stack in pure Python. It builds
HCI command and ACL packets, parses HCI events, runs L2CAP connection
parameter signaling, and talks to BlueNRG-family controllers over SPI.

## Install

```
pip install blehci
```

## Modules

- `blehci.hci` holds the `HCI` class. It sends commands and waits up to
  `HCI.command_timeout` seconds for each to complete. It tracks free
  controller ACL buffers, reassembles fragmented ACL data, and hands
  connection, disconnection and advertising events to the ATT, GAP and
  L2CAP objects you give it. A failed or timed-out command raises
  `HCIError`, which carries `status` and `opcode`. Call
  `read_le_buffer_size()` before `send_acl_pkt()`. That call sets the
  controller's buffer count, and it passes the usable MTU to
  `att.set_max_mtu()`. `debug(stream)` writes a hex dump of every packet
  to `stream`, and `no_debug()` turns the dump off.
- `blehci.hci_codec` encodes and decodes packets: `make_opcode`,
  `encode_command`, `encode_acl_packet`, `decode_acl_header`,
  `decode_event`, `decode_local_version`, `decode_le_buffer_size`,
  `decode_rssi` and `hex_dump`. Decoded events are frozen dataclasses:
  `CommandComplete`, `CommandStatus`, `DisconnectionComplete`,
  `NumCompletedPackets`, `LeConnectionComplete` and
  `LeAdvertisingReport`. `decode_event` returns `None` for events it does
  not handle, and raises `ValueError` for truncated packets.
- `blehci.l2cap` holds `L2CAPSignaling`. When a link comes up in the
  peripheral role, it asks the central for your preferred connection
  interval and supervision timeout. It accepts or rejects the central's
  update requests against those same settings, which you give through
  `set_connection_interval()` and `set_supervision_timeout()`.
- `blehci.spi_link` holds `SpiBus`, the abstract interface you implement
  for your board (transfer, chip select, IRQ line, reset and timing), and
  `SpiLink`, which frames HCI traffic through the SPI header handshake.
  `BLEChip` names the supported modules: `SPBTLE_RF`, `SPBTLE_1S`,
  `BLUENRG_M2SP` and `BLUENRG_M0`.
- `blehci.spi_transport` holds `SpiTransport`, the byte-stream transport
  that `HCI` reads from and writes to. After the host's HCI reset it runs
  the module's start-up commands and keeps the module's random static
  address in `random_address`.
- `blehci.wpan` holds small integer helpers: `divf`, `divc`, `divr`,
  `shrr`, `bitn`, `bitn_set`, `mod_inc`, `mod_dec`, `mod_add` and
  `mod_sub`.

## Example

```python
from blehci.hci import HCI
from blehci.l2cap import L2CAPSignaling
from blehci.spi_link import BLEChip
from blehci.spi_transport import SpiTransport

transport = SpiTransport(my_bus, BLEChip.BLUENRG_M0)  # my_bus implements SpiBus
hci = HCI(transport, att, gap, None)
hci.l2cap = L2CAPSignaling(hci)
hci.begin()
hci.reset()
hci.read_le_buffer_size()
print(hci.read_bd_addr().hex(":"))
```

`att` and `gap` are your own layers:

- `att` must provide `set_max_mtu`, `handle_data`, `add_connection` and
  `remove_connection`.
- `gap` must provide `advertising()` and `handle_le_advertising_report`.

You can pass `None` for either one. Events meant for a missing layer are
dropped.

## What it does not do

- The package has no attribute protocol (ATT/GATT) layer and no GAP
  layer; you supply them.
- Its only transport is the SPI one. It has no UART or shared-memory
  transport.
- It ships no `SpiBus` implementation for any particular board.
- It has no command-line program.

## Tests

```
pip install -e ".[test]"
pytest
```