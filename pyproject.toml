[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blehci"
version = "0.1.0"
description = "Bluetooth Low Energy host controller interface: command encoding, event parsing, L2CAP signaling and an SPI transport"
requires-python = ">=3.10"
dependencies = []
keywords = ["bluetooth", "ble", "hci", "l2cap", "spi", "bluenrg"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["blehci"]

[tool.pytest.ini_options]
addopts = "-ra"
