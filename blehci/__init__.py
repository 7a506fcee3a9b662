"""Bluetooth Low Energy HCI host layer, packet codec, L2CAP signaling and SPI transport."""

__version__ = "0.1.0"