#!/usr/bin/env python3
"""
memsdiag.py - Rover MEMS 1.6 Diagnostic Tool
=============================================

Serial diagnostics for the Rover MEMS 1.6 engine management ECU
(Mini SPi, MGF and friends). Talks the single-byte command/echo protocol
used by the ECU's diagnostic connector through a USB-TTL cable.

Target Hardware:
    ECU:    Rover MEMS 1.6 (MNE101070 / MNE101170 and relatives)
    Bus:    9600 baud 8N1 half-duplex serial, no flow control
    Cable:  FTDI / CP210x USB-TTL adapter on the diagnostic plug

Protocol:
    Every command is one byte. The ECU acknowledges by echoing the byte
    back before sending any payload. A four-byte handshake
    (CA 75 F4 D0) must complete once per connection before data or
    actuator commands are answered.

    0x80  -> 28-byte primary data frame
    0x7D  -> 32-byte secondary data frame (lambda, trims, idle base)
    0xFB  -> IAC position, 0xFD/0xFE step the IAC open/closed
    0x11/0x01, 0x12/0x02, 0x13/0x03 -> fuel pump / PTC / A/C relays
    0xF7  -> injector test, 0xF8 -> coil fire
    0xCC  -> clear faults, 0xF4 -> heartbeat

Architecture:
    Single-file module with a CLI front end.
    Simulated ECU transport for offline testing.

Requires: Python 3.10+, pyserial, rich
Optional: ftd2xx (D2XX transport)

MIT License

Copyright (c) 2026 Jason King (pcmhacking.net: kingaustraliagg)

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""




# ═══════════════════════════════════════════════════════════════════════
# SECTION 0: IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import time
import logging
import argparse
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field, asdict
from enum import IntEnum, IntFlag, Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Any, ClassVar, Union
from collections import deque

import serial
import serial.tools.list_ports
from rich.logging import RichHandler

# ── Version & Metadata ──
__version__ = "0.1.0"
__app_name__ = "memsdiag"
__target_ecu__ = "Rover MEMS 1.6"

# ── Logging Setup ──
LOG_DIR = Path(__file__).resolve().parent / "logs"
USER_LOG_DIR = Path.home() / ".memsdiag" / "logs"

log = logging.getLogger("memsdiag")


def default_log_dir() -> Path:
    """logs/ next to this file, or ~/.memsdiag/logs when that isn't writable (site-packages)."""
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
    except OSError:
        USER_LOG_DIR.mkdir(parents=True, exist_ok=True)
        return USER_LOG_DIR
    return LOG_DIR


def setup_logging(
    name: str = "memsdiag",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Configure and return a logger.

    Args:
        name:          Logger name and log-file prefix.
        level:         Root level (DEBUG captures every wire byte to file).
        console_level: Level for console/terminal output (WARNING+ by
                       default so sensor printouts aren't cluttered).
        log_dir:       Override log directory (default: default_log_dir()).
        rich_console:  Use Rich handler for the console.

    Returns:
        Configured ``logging.Logger`` instance.

    Log files: ``<log_dir>/<name>_YYYYMMDD_HHMMSS.log``
    """
    log_dir = Path(log_dir) if log_dir else default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level)

    # ── File handler: captures everything (DEBUG+) ──
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"{name}_{ts}.log"
    file_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(file_fmt)
    logger.addHandler(fh)

    # ── Console handler: only important stuff (WARNING+ default) ──
    if rich_console:
        ch = RichHandler(
            level=console_level,
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    else:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S",
        ))
    ch.setLevel(console_level)
    logger.addHandler(ch)

    # Startup banner (file only)
    logger.info("=" * 60)
    logger.info("Logger initialized: %s", name)
    logger.info("Log file: %s", log_file)
    logger.info("Console level: %s", logging.getLevelName(console_level))
    logger.info("=" * 60)

    return logger


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1: CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

class DataCommand(IntEnum):
    """Data request and maintenance command bytes."""
    REQ_DATA_7D = 0x7D
    REQ_DATA_80 = 0x80
    CLEAR_FAULTS = 0xCC
    HEARTBEAT = 0xF4
    GET_IAC_POSITION = 0xFB

class ActuatorCommand(IntEnum):
    """
    Actuator test command bytes.

    The ECU shuts the relays off by itself after a short time (< 1 s).
    An "off" command sent inside that window is echoed and answered
    but has no physical effect.
    """
    FUEL_PUMP_ON = 0x11
    FUEL_PUMP_OFF = 0x01
    PTC_RELAY_ON = 0x12
    PTC_RELAY_OFF = 0x02
    AC_RELAY_ON = 0x13
    AC_RELAY_OFF = 0x03
    TEST_INJECTORS = 0xF7
    FIRE_COIL = 0xF8
    OPEN_IAC = 0xFD
    CLOSE_IAC = 0xFE

class FaultCode(IntFlag):
    """Fault bitmask derived from the two DTC bytes of the 0x80 frame."""
    COOLANT_TEMP_SENSOR = 0x01      # dtc0 bit 0
    INTAKE_AIR_TEMP_SENSOR = 0x02   # dtc0 bit 1
    FUEL_PUMP_CIRCUIT = 0x04        # dtc1 bit 1
    THROTTLE_POT_CIRCUIT = 0x08     # dtc1 bit 7

class ProtocolVersion(Enum):
    """
    Frame layout generations. Not wire compatible; never mix them.

    ROSCO:  0x80 + 0x7D frames, temperatures reported in degrees C.
    LEGACY: 0x80 frame only, temperatures converted to degrees F.
    """
    ROSCO = "rosco"
    LEGACY = "legacy"

# Link initialisation: (command byte, trailing bytes after the echo).
# F4 is followed by a null terminator that is discarded; D0 by the
# 4-byte ECU identification response.
INIT_SEQUENCE: Tuple[Tuple[int, int], ...] = (
    (0xCA, 0),
    (0x75, 0),
    (DataCommand.HEARTBEAT, 1),
    (0xD0, 4),
)

# Known D0 identification responses
ECU_IDENTITIES: Dict[bytes, str] = {
    bytes([0x99, 0x00, 0x02, 0x03]): "MNE101070",
    bytes([0x99, 0x00, 0x03, 0x03]): "MNE101170",
}

# on/off pairs for the relay tests
RELAY_PAIRS: Dict[str, Tuple[ActuatorCommand, ActuatorCommand]] = {
    "fuelpump": (ActuatorCommand.FUEL_PUMP_ON, ActuatorCommand.FUEL_PUMP_OFF),
    "ptc":      (ActuatorCommand.PTC_RELAY_ON, ActuatorCommand.PTC_RELAY_OFF),
    "ac":       (ActuatorCommand.AC_RELAY_ON, ActuatorCommand.AC_RELAY_OFF),
}

# IAC position reported as fully open
IAC_MAXIMUM = 0xB4

# Default comm settings
DEFAULT_BAUD = 9600
DEFAULT_READ_TIMEOUT_MS = 100      # inter-byte silence before a read gives up
DEFAULT_WRITE_TIMEOUT_MS = 1000
DEFAULT_IAC_MAX_ATTEMPTS = 300
DEFAULT_IAC_CLOSE_REPEAT = 80      # extra close steps sent once the valve reads 0
DEFAULT_RELAY_HOLD_S = 2.0

KPA_PER_PSI = 6.89475729


def identify_ecu(response: bytes) -> Optional[str]:
    """Map a D0 identification response to a known ECU part number."""
    return ECU_IDENTITIES.get(bytes(response))


class ProtocolError(Exception):
    """Raised on malformed frame data handed to the decoder."""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2: FRAME LAYOUTS & DECODER
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FrameField:
    """One field in a data frame. 2-byte fields are big-endian (hi, lo)."""
    name: str
    offset: int
    size: int = 1

    def extract(self, data: bytes) -> int:
        if self.size == 1:
            return data[self.offset]
        return (data[self.offset] << 8) | data[self.offset + 1]


# Reply to 0x80. Byte 0 is the frame length as sent by the ECU (0x1C).
FRAME_80_FIELDS: Tuple[FrameField, ...] = (
    FrameField("frame_size",              0),
    FrameField("engine_rpm",              1, 2),
    FrameField("coolant_temp",            3),
    FrameField("ambient_temp",            4),
    FrameField("intake_air_temp",         5),
    FrameField("fuel_temp",               6),
    FrameField("map_kpa",                 7),
    FrameField("battery_voltage",         8),    # tenths of a volt
    FrameField("throttle_pot",            9),    # 0.02 V/count
    FrameField("idle_switch",            10),
    FrameField("aircon_switch",          11),
    FrameField("park_neutral_switch",    12),
    FrameField("dtc0",                   13),
    FrameField("dtc1",                   14),
    FrameField("idle_setpoint",          15),
    FrameField("idle_hot",               16),
    FrameField("unknown_11",             17),
    FrameField("iac_position",           18),
    FrameField("idle_error",             19, 2),
    FrameField("ignition_advance_offset", 21),
    FrameField("ignition_advance",       22),    # half degrees, 24 deg offset
    FrameField("coil_time",              23, 2), # 2 us/count
    FrameField("crankshaft_pos",         25),
    FrameField("unknown_1a",             26),
    FrameField("unknown_1b",             27),
)
FRAME_80_SIZE = 28

# Reply to 0x7D. Byte 0 is the frame length as sent by the ECU (0x20).
FRAME_7D_FIELDS: Tuple[FrameField, ...] = (
    FrameField("frame_size",                  0),
    FrameField("ignition_switch",             1),
    FrameField("throttle_angle",              2),
    FrameField("unknown_03",                  3),
    FrameField("air_fuel_ratio",              4),
    FrameField("dtc2",                        5),
    FrameField("lambda_voltage",              6),    # 5 mV/count
    FrameField("lambda_frequency",            7),
    FrameField("lambda_duty_cycle",           8),
    FrameField("lambda_status",               9),
    FrameField("closed_loop",                10),
    FrameField("long_term_fuel_trim",        11),
    FrameField("short_term_fuel_trim",       12),
    FrameField("carbon_canister_duty_cycle", 13),
    FrameField("dtc3",                       14),
    FrameField("idle_base_pos",              15),
    FrameField("unknown_10",                 16),
    FrameField("dtc4",                       17),
    FrameField("ignition_advance2",          18),
    FrameField("idle_speed_offset",          19),
    FrameField("idle_error2",                20),
    FrameField("unknown_15",                 21),
    FrameField("dtc5",                       22),
    FrameField("unknown_17",                 23),
    FrameField("unknown_18",                 24),
    FrameField("unknown_19",                 25),
    FrameField("unknown_1a",                 26),
    FrameField("unknown_1b",                 27),
    FrameField("unknown_1c",                 28),
    FrameField("unknown_1d",                 29),
    FrameField("unknown_1e",                 30),
    FrameField("jack_count",                 31),
)
FRAME_7D_SIZE = 32


@dataclass(frozen=True)
class RawFrame:
    """
    A raw data frame, kept byte-for-byte as received.
    Fields are pulled out by explicit offset; unknown bytes stay in ``raw``.
    """
    raw: bytes

    COMMAND: ClassVar[int] = 0
    SIZE: ClassVar[int] = 0
    FIELDS: ClassVar[Tuple[FrameField, ...]] = ()

    @classmethod
    def from_bytes(cls, data: bytes) -> "RawFrame":
        if len(data) != cls.SIZE:
            raise ProtocolError(
                f"{cls.__name__} needs {cls.SIZE} bytes, got {len(data)}")
        return cls(bytes(data))

    def __getitem__(self, name: str) -> int:
        for f in self.FIELDS:
            if f.name == name:
                return f.extract(self.raw)
        raise KeyError(name)

    def to_bytes(self) -> bytes:
        return self.raw

    def as_dict(self) -> Dict[str, int]:
        return {f.name: f.extract(self.raw) for f in self.FIELDS}


@dataclass(frozen=True)
class Frame80(RawFrame):
    """Primary telemetry frame (reply to 0x80)."""
    COMMAND: ClassVar[int] = DataCommand.REQ_DATA_80
    SIZE: ClassVar[int] = FRAME_80_SIZE
    FIELDS: ClassVar[Tuple[FrameField, ...]] = FRAME_80_FIELDS


@dataclass(frozen=True)
class Frame7D(RawFrame):
    """Secondary telemetry frame (reply to 0x7D)."""
    COMMAND: ClassVar[int] = DataCommand.REQ_DATA_7D
    SIZE: ClassVar[int] = FRAME_7D_SIZE
    FIELDS: ClassVar[Tuple[FrameField, ...]] = FRAME_7D_FIELDS


@dataclass(frozen=True)
class SensorSnapshot:
    """Decoded, unit-converted sensor values from one frame pair."""
    engine_rpm: int
    coolant_temp: float
    ambient_temp: float
    intake_air_temp: float
    fuel_temp: float
    map_kpa: float
    battery_voltage: float
    throttle_pot_voltage: float
    idle_switch: bool
    park_neutral_switch: bool
    fault_codes: FaultCode
    iac_position: int
    idle_error: Optional[int] = None
    ignition_advance: Optional[float] = None   # degrees
    coil_time: Optional[float] = None          # ms
    lambda_voltage_mv: Optional[int] = None
    fuel_trim: Optional[int] = None
    closed_loop: Optional[bool] = None
    idle_base_pos: Optional[int] = None
    temperature_unit: str = "C"

    @property
    def map_psi(self) -> float:
        return self.map_kpa / KPA_PER_PSI

    @property
    def faults(self) -> List[str]:
        return [f.name for f in FaultCode if f in self.fault_codes]

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fault_codes"] = int(self.fault_codes)
        return data


def decode_faults(dtc0: int, dtc1: int) -> FaultCode:
    """Fold the interpreted DTC bits into a FaultCode mask. Other bits are ignored."""
    faults = FaultCode(0)
    if dtc0 & 0x01:
        faults |= FaultCode.COOLANT_TEMP_SENSOR
    if dtc0 & 0x02:
        faults |= FaultCode.INTAKE_AIR_TEMP_SENSOR
    if dtc1 & 0x02:
        faults |= FaultCode.FUEL_PUMP_CIRCUIT
    if dtc1 & 0x80:
        faults |= FaultCode.THROTTLE_POT_CIRCUIT
    return faults


def temperature_to_fahrenheit(raw: int) -> float:
    """LEGACY layout: ECU temperature value (C + 55) to degrees F."""
    return (raw - 55) * 1.8 + 32


def decode(frame80: Frame80, frame7d: Frame7D) -> SensorSnapshot:
    """Decode a ROSCO frame pair. Pure function, no I/O."""
    return SensorSnapshot(
        engine_rpm=frame80["engine_rpm"],
        coolant_temp=frame80["coolant_temp"],
        ambient_temp=frame80["ambient_temp"],
        intake_air_temp=frame80["intake_air_temp"],
        fuel_temp=frame80["fuel_temp"],
        map_kpa=float(frame80["map_kpa"]),
        battery_voltage=frame80["battery_voltage"] / 10.0,
        throttle_pot_voltage=frame80["throttle_pot"] * 0.02,
        idle_switch=frame80["idle_switch"] != 0,
        park_neutral_switch=frame80["park_neutral_switch"] != 0,
        fault_codes=decode_faults(frame80["dtc0"], frame80["dtc1"]),
        iac_position=frame80["iac_position"],
        idle_error=frame80["idle_error"],
        ignition_advance=frame80["ignition_advance"] * 0.5 - 24.0,
        coil_time=frame80["coil_time"] * 0.002,
        lambda_voltage_mv=frame7d["lambda_voltage"] * 5,
        fuel_trim=frame7d["short_term_fuel_trim"],
        closed_loop=frame7d["closed_loop"] != 0,
        idle_base_pos=frame7d["idle_base_pos"],
        temperature_unit="C",
    )


def decode_legacy(frame80: Frame80) -> SensorSnapshot:
    """
    Decode a LEGACY 0x80 frame. Only the fields that generation is known
    to report are interpreted; the ROSCO-only fields are left as None.
    """
    return SensorSnapshot(
        engine_rpm=frame80["engine_rpm"],
        coolant_temp=temperature_to_fahrenheit(frame80["coolant_temp"]),
        ambient_temp=temperature_to_fahrenheit(frame80["ambient_temp"]),
        intake_air_temp=temperature_to_fahrenheit(frame80["intake_air_temp"]),
        fuel_temp=temperature_to_fahrenheit(frame80["fuel_temp"]),
        map_kpa=float(frame80["map_kpa"]),
        battery_voltage=frame80["battery_voltage"] / 10.0,
        throttle_pot_voltage=frame80["throttle_pot"] * 0.02,
        idle_switch=frame80["idle_switch"] != 0,
        park_neutral_switch=frame80["park_neutral_switch"] != 0,
        fault_codes=decode_faults(frame80["dtc0"], frame80["dtc1"]),
        iac_position=frame80["iac_position"],
        temperature_unit="F",
    )


def decode_frames(frame80: Frame80, frame7d: Optional[Frame7D],
                  protocol: ProtocolVersion = ProtocolVersion.ROSCO) -> SensorSnapshot:
    """Pick the decoder for the protocol generation."""
    if protocol is ProtocolVersion.LEGACY:
        return decode_legacy(frame80)
    if frame7d is None:
        raise ProtocolError("ROSCO decode needs both 0x80 and 0x7D frames")
    return decode(frame80, frame7d)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3: TRANSPORT LAYER (Serial / D2XX / Simulated ECU)
# ═══════════════════════════════════════════════════════════════════════

class TransportError(Exception):
    """Raised when transport fails."""

class BaseTransport:
    """Abstract base for all byte channels."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def read(self, count: int, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        raise NotImplementedError

    def flush_input(self) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError


class PySerialTransport(BaseTransport):
    """PySerial (tty / COM port / VCP) transport, 9600 8N1 raw mode."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD,
                 timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
                 write_timeout_ms: int = DEFAULT_WRITE_TIMEOUT_MS):
        self.port = port
        self.baud = baud
        self.timeout_ms = timeout_ms
        self.write_timeout_ms = write_timeout_ms
        self._serial: Optional[serial.Serial] = None

    def open(self) -> None:
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.timeout_ms / 1000.0,
                write_timeout=self.write_timeout_ms / 1000.0,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
            self._serial.reset_input_buffer()
            log.info("Opened %s at %d baud", self.port, self.baud)
        except (serial.SerialException, ValueError) as e:
            if self._serial is not None:
                self._serial.close()
            self._serial = None
            raise TransportError(f"Failed to open {self.port}: {e}") from e

    def close(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.close()
            log.info("Closed %s", self.port)
        self._serial = None

    def write(self, data: bytes) -> int:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            return self._serial.write(data) or 0
        except serial.SerialException as e:
            raise TransportError(f"Write to {self.port} failed: {e}") from e

    def read(self, count: int, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        if not self._serial or not self._serial.is_open:
            raise TransportError("Port not open")
        try:
            self._serial.timeout = timeout_ms / 1000.0
            return bytes(self._serial.read(count))
        except serial.SerialException as e:
            raise TransportError(f"Read from {self.port} failed: {e}") from e

    def flush_input(self) -> None:
        if self._serial and self._serial.is_open:
            self._serial.reset_input_buffer()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @staticmethod
    def list_ports() -> List[str]:
        """List available serial ports."""
        return [p.device for p in serial.tools.list_ports.comports()]


class D2XXTransport(BaseTransport):
    """FTDI D2XX direct USB transport (lower latency). Needs the d2xx extra."""

    def __init__(self, device_index: int = 0, baud: int = DEFAULT_BAUD,
                 timeout_ms: int = DEFAULT_READ_TIMEOUT_MS):
        self.device_index = device_index
        self.baud = baud
        self.timeout_ms = timeout_ms
        self._ftd2xx = None
        self._device = None

    def open(self) -> None:
        try:
            import ftd2xx
        except ImportError as e:
            raise TransportError("ftd2xx not installed: pip install memsdiag[d2xx]") from e
        device = None
        try:
            device = ftd2xx.open(self.device_index)
            device.setBaudRate(self.baud)
            device.setDataCharacteristics(
                ftd2xx.defines.BITS_8,
                ftd2xx.defines.STOP_BITS_1,
                ftd2xx.defines.PARITY_NONE,
            )
            device.setFlowControl(ftd2xx.defines.FLOW_NONE, 0, 0)
            device.setTimeouts(self.timeout_ms, DEFAULT_WRITE_TIMEOUT_MS)
            device.setLatencyTimer(2)
            device.purge(ftd2xx.defines.PURGE_RX | ftd2xx.defines.PURGE_TX)
        except ftd2xx.DeviceError as e:
            if device is not None:
                try:
                    device.close()
                except ftd2xx.DeviceError as close_err:
                    log.debug("D2XX close after failed open: %s", close_err)
            raise TransportError(f"Failed to open D2XX device {self.device_index}: {e}") from e
        self._ftd2xx = ftd2xx
        self._device = device
        log.info("Opened FTDI D2XX device %d at %d baud", self.device_index, self.baud)

    def close(self) -> None:
        if self._device:
            try:
                self._device.close()
            except self._ftd2xx.DeviceError as e:
                log.warning("D2XX close failed: %s", e)
            self._device = None

    def write(self, data: bytes) -> int:
        if not self._device:
            raise TransportError("D2XX device not open")
        try:
            return self._device.write(bytes(data))
        except self._ftd2xx.DeviceError as e:
            raise TransportError(f"D2XX write failed: {e}") from e

    def read(self, count: int, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        if not self._device:
            raise TransportError("D2XX device not open")
        try:
            self._device.setTimeouts(timeout_ms, DEFAULT_WRITE_TIMEOUT_MS)
            return bytes(self._device.read(count))
        except self._ftd2xx.DeviceError as e:
            raise TransportError(f"D2XX read failed: {e}") from e

    def flush_input(self) -> None:
        if self._device:
            self._device.purge(self._ftd2xx.defines.PURGE_RX)

    @property
    def is_open(self) -> bool:
        return self._device is not None


class SimulatedECUTransport(BaseTransport):
    """
    In-memory MEMS 1.6 ECU for testing without hardware.

    Echoes every command byte and appends the payload a real ECU sends:
    handshake replies, the two data frames, IAC position and step
    replies, and the one-byte actuator/maintenance acknowledgements.

    ``iac_step`` is how far one open/close command moves the valve;
    0 gives a stuck valve.
    """

    PAYLOAD_ONLY_ECHO = (0xCA, 0x75)

    def __init__(self, iac_position: int = 0x50, iac_step: int = 1,
                 ecu_id: bytes = bytes([0x99, 0x00, 0x03, 0x03]),
                 frame80: Optional[bytes] = None, frame7d: Optional[bytes] = None):
        self._rx_buffer = bytearray()
        self._opened = False
        self.tx_log: List[int] = []
        self.iac_position = iac_position
        self.iac_step = iac_step
        self.ecu_id = bytes(ecu_id)
        self.faults_cleared = 0
        self._frame80 = bytes(frame80) if frame80 is not None else None
        self._frame7d = bytes(frame7d) if frame7d is not None else None

    def open(self) -> None:
        self._opened = True
        log.info("Simulated ECU transport opened")

    def close(self) -> None:
        self._opened = False

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Simulated ECU not open")
        for b in data:
            self.tx_log.append(b)
            self._rx_buffer.append(b)
            self._rx_buffer.extend(self._simulate_response(b))
        return len(data)

    def read(self, count: int, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> bytes:
        if not self._opened:
            raise TransportError("Simulated ECU not open")
        result = bytes(self._rx_buffer[:count])
        del self._rx_buffer[:count]
        return result

    def flush_input(self) -> None:
        self._rx_buffer.clear()

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def bytes_available(self) -> int:
        return len(self._rx_buffer)

    def build_frame80(self) -> bytes:
        if self._frame80 is not None:
            return self._frame80
        frame = bytearray(FRAME_80_SIZE)
        frame[0] = FRAME_80_SIZE
        frame[1], frame[2] = 0x03, 0x52     # 850 RPM
        frame[3] = 88                       # coolant
        frame[4] = 21                       # ambient
        frame[5] = 30                       # intake air
        frame[6] = 25                       # fuel
        frame[7] = 35                       # MAP kPa
        frame[8] = 141                      # 14.1 V
        frame[9] = 30                       # 0.60 V
        frame[10] = 1                       # idle switch closed
        frame[18] = self.iac_position
        frame[22] = 64                      # 8.0 deg
        frame[23], frame[24] = 0x07, 0xD0   # 4.0 ms
        return bytes(frame)

    def build_frame7d(self) -> bytes:
        if self._frame7d is not None:
            return self._frame7d
        frame = bytearray(FRAME_7D_SIZE)
        frame[0] = FRAME_7D_SIZE
        frame[6] = 90                       # 450 mV
        frame[10] = 1                       # closed loop
        frame[11] = 128
        frame[12] = 100
        frame[15] = 0x23
        return bytes(frame)

    def _simulate_response(self, cmd: int) -> bytes:
        """Payload that follows the echo of *cmd*."""
        if cmd in self.PAYLOAD_ONLY_ECHO:
            return b""
        if cmd == DataCommand.HEARTBEAT:
            return b"\x00"
        if cmd == 0xD0:
            return self.ecu_id
        if cmd == DataCommand.REQ_DATA_80:
            return self.build_frame80()
        if cmd == DataCommand.REQ_DATA_7D:
            return self.build_frame7d()
        if cmd == DataCommand.GET_IAC_POSITION:
            return bytes([self.iac_position])
        if cmd == ActuatorCommand.OPEN_IAC:
            self.iac_position = min(self.iac_position + self.iac_step, IAC_MAXIMUM)
            return bytes([self.iac_position])
        if cmd == ActuatorCommand.CLOSE_IAC:
            self.iac_position = max(self.iac_position - self.iac_step, 0)
            return bytes([self.iac_position])
        if cmd == DataCommand.CLEAR_FAULTS:
            self.faults_cleared += 1
            return b"\x00"
        if cmd == ActuatorCommand.TEST_INJECTORS:
            return b"\x03"
        if cmd in (ActuatorCommand.FUEL_PUMP_ON, ActuatorCommand.FUEL_PUMP_OFF,
                   ActuatorCommand.PTC_RELAY_ON, ActuatorCommand.PTC_RELAY_OFF,
                   ActuatorCommand.AC_RELAY_ON, ActuatorCommand.AC_RELAY_OFF,
                   ActuatorCommand.FIRE_COIL):
            return b"\x00"
        return b""


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4: ECU COMMUNICATION ENGINE
# ═══════════════════════════════════════════════════════════════════════

class CommState(Enum):
    """Connection state machine."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    LINKED = auto()
    ERROR = auto()

@dataclass
class CommConfig:
    """Communication configuration."""
    baud: int = DEFAULT_BAUD
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS
    write_timeout_ms: int = DEFAULT_WRITE_TIMEOUT_MS
    protocol: ProtocolVersion = ProtocolVersion.ROSCO
    iac_max_attempts: int = DEFAULT_IAC_MAX_ATTEMPTS
    iac_close_repeat: int = DEFAULT_IAC_CLOSE_REPEAT
    relay_hold_s: float = DEFAULT_RELAY_HOLD_S

class IACOutcome(Enum):
    """Why an IAC convergence stopped."""
    ALREADY_AT_TARGET = auto()
    REACHED = auto()
    READ_FAILED = auto()
    STEP_FAILED = auto()
    EXHAUSTED = auto()
    CANCELLED = auto()

@dataclass
class IACResult:
    """Result of one IAC convergence run."""
    outcome: IACOutcome
    position: Optional[int]
    target: int
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.position is not None and self.position == self.target


class MemsComm:
    """
    MEMS ECU communication engine.

    Owns the byte channel and the one lock that serialises every
    command/response exchange on it. The protocol has no request IDs, so
    an interleaved command from a second thread would be indistinguishable
    from a stray reply to the first.

    Expected wire conditions (no echo, wrong echo, short frame) come back
    as False/None; details go to the log and the "log" event.
    """

    def __init__(self, config: CommConfig = None):
        self.config = config or CommConfig()
        self.transport: Optional[BaseTransport] = None
        self.state = CommState.DISCONNECTED
        self.ecu_id: bytes = b""
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: Dict[str, List[Callable]] = {}

    def __enter__(self) -> "MemsComm":
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()

    # ── Event System ──

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback. Events: log, state, tx, rx, progress."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)

    def _report(self, msg: str, level: str = "info") -> None:
        getattr(log, level)(msg)
        self.emit("log", msg=msg, level=level)

    def _set_state(self, state: CommState) -> None:
        self.state = state
        self.emit("state", state=state)

    def cancel(self) -> None:
        """Cancel the current multi-step operation at its next exchange."""
        self._cancel.set()
        self.emit("log", msg="Operation cancelled by user", level="warning")

    def reset_cancel(self) -> None:
        """Reset the cancel flag."""
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ── Connection ──

    @property
    def is_connected(self) -> bool:
        return self.transport is not None and self.transport.is_open

    def connect(self, device: Union[str, BaseTransport]) -> bool:
        """
        Open the byte channel. *device* is a serial port path or a ready
        transport. Succeeds without reopening if already connected.
        """
        with self._lock:
            if self.is_connected:
                return True
            if isinstance(device, BaseTransport):
                transport = device
            else:
                transport = PySerialTransport(device, self.config.baud,
                                              self.config.read_timeout_ms,
                                              self.config.write_timeout_ms)
            try:
                transport.open()
            except TransportError as e:
                self._report(str(e), "error")
                self._set_state(CommState.ERROR)
                return False

            self.transport = transport
            self.ecu_id = b""
            self._set_state(CommState.CONNECTED)
            self._report(f"Connected via {type(transport).__name__}")
            return True

    def disconnect(self) -> None:
        """Close the byte channel. No-op when already closed."""
        with self._lock:
            if self.transport is None:
                return
            try:
                self.transport.close()
            except TransportError as e:
                log.warning("Close failed: %s", e)
            self.transport = None
            self.ecu_id = b""
            self._set_state(CommState.DISCONNECTED)

    def cleanup(self) -> None:
        """Disconnect and drop all callbacks."""
        self.disconnect()
        self._callbacks.clear()

    def _locked(self, fn: Callable, *args, default: Any = None) -> Any:
        """Run *fn* holding the connection lock; *default* if not connected."""
        with self._lock:
            if not self.is_connected:
                log.warning("%s: not connected", fn.__name__.lstrip("_"))
                return default
            return fn(*args)

    # ── Low-Level Byte I/O (caller holds the lock) ──

    def _read_exact(self, count: int) -> bytes:
        """
        Read until *count* bytes arrived or the channel goes quiet.
        Returns what arrived; callers compare the length.
        """
        data = bytearray()
        while len(data) < count:
            try:
                chunk = self.transport.read(count - len(data),
                                            timeout_ms=self.config.read_timeout_ms)
            except TransportError as e:
                log.warning("Read failed: %s", e)
                break
            if not chunk:
                break
            data.extend(chunk)

        if data:
            log.debug("RX [%d]: %s", len(data), data.hex(" "))
            self.emit("rx", data=bytes(data))
        if len(data) < count:
            log.warning("Expected %d bytes, got %d", count, len(data))
        return bytes(data)

    def _send_command(self, cmd: int) -> bool:
        """Write one command byte and check the ECU echoes it."""
        cmd = int(cmd) & 0xFF
        log.debug("TX %02x", cmd)
        self.emit("tx", data=bytes([cmd]))
        try:
            written = self.transport.write(bytes([cmd]))
        except TransportError as e:
            written = 0
            log.warning("Write failed: %s", e)
        if written != 1:
            self._report(f"Failed to send command {cmd:02X}", "warning")
            return False

        echo = self._read_exact(1)
        if not echo:
            self._report(f"No echo of command {cmd:02X}", "warning")
            return False
        if len(echo) != 1 or echo[0] != cmd:
            self._report(
                f"Bad echo for command {cmd:02X}: received {echo.hex(' ').upper()}", "warning")
            return False
        return True

    def _command_with_payload(self, cmd: int) -> Optional[int]:
        """Command/echo followed by exactly one payload byte."""
        if not self._send_command(cmd):
            return None
        payload = self._read_exact(1)
        if len(payload) != 1:
            self._report(f"No payload byte after command {int(cmd):02X}", "warning")
            return None
        return payload[0]

    # ── Command/Echo ──

    def send_command(self, cmd: int) -> bool:
        """Send one command byte and wait for its echo."""
        return self._locked(self._send_command, cmd, default=False)

    # ── Link Initialisation ──

    def _init_link(self) -> Tuple[bool, bytes]:
        response = b""
        for cmd, trailing in INIT_SEQUENCE:
            if not self._send_command(cmd):
                self._report(f"Link init: no echo of {int(cmd):02X}", "error")
                return False, b""
            if trailing:
                payload = self._read_exact(trailing)
                if len(payload) != trailing:
                    self._report(
                        f"Link init: expected {trailing} byte(s) after {int(cmd):02X}, "
                        f"got {len(payload)}", "error")
                    return False, b""
                response = payload

        self.ecu_id = response
        self._set_state(CommState.LINKED)
        part = identify_ecu(response)
        self._report(f"ECU responded {response.hex(' ').upper()}"
                     + (f" ({part})" if part else ""))
        return True, response

    def init_link(self) -> Tuple[bool, bytes]:
        """
        Run the CA 75 F4 D0 handshake. Any failed step aborts the whole
        sequence; the caller restarts it from the beginning.
        Returns (ok, 4-byte identification response).
        """
        return self._locked(self._init_link, default=(False, b""))

    # ── Data Frames ──

    def _read_raw(self) -> Optional[Tuple[Frame80, Optional[Frame7D]]]:
        frames = []
        frame_types = [Frame80]
        if self.config.protocol is ProtocolVersion.ROSCO:
            frame_types.append(Frame7D)

        for frame_type in frame_types:
            if not self._send_command(frame_type.COMMAND):
                self._report(f"Failed to request {frame_type.__name__}", "warning")
                return None
            data = self._read_exact(frame_type.SIZE)
            if len(data) != frame_type.SIZE:
                self._report(f"Short {frame_type.__name__}: {len(data)}/{frame_type.SIZE} bytes",
                             "warning")
                return None
            frames.append(frame_type.from_bytes(data))

        frame80 = frames[0]
        frame7d = frames[1] if len(frames) > 1 else None
        return frame80, frame7d

    def read_raw(self) -> Optional[Tuple[Frame80, Optional[Frame7D]]]:
        """Request both data frames in one locked exchange. None on any short read."""
        return self._locked(self._read_raw)

    def read(self) -> Optional[SensorSnapshot]:
        """Read and decode one sensor snapshot."""
        frames = self.read_raw()
        if frames is None:
            return None
        return decode_frames(frames[0], frames[1], self.config.protocol)

    # ── Actuators & Maintenance ──

    def test_actuator(self, cmd: int) -> Optional[int]:
        """Send an actuator command and return the payload byte that follows the echo."""
        return self._locked(self._command_with_payload, cmd)

    def read_iac_position(self) -> Optional[int]:
        return self._locked(self._command_with_payload, DataCommand.GET_IAC_POSITION)

    def clear_faults(self) -> bool:
        return self._locked(self._command_with_payload, DataCommand.CLEAR_FAULTS) is not None

    def heartbeat(self) -> bool:
        return self._locked(self._command_with_payload, DataCommand.HEARTBEAT) is not None

    def fuel_pump_control(self, pump_on: bool) -> bool:
        cmd = ActuatorCommand.FUEL_PUMP_ON if pump_on else ActuatorCommand.FUEL_PUMP_OFF
        return self.test_actuator(cmd) is not None

    def ptc_relay_control(self, relay_on: bool) -> bool:
        cmd = ActuatorCommand.PTC_RELAY_ON if relay_on else ActuatorCommand.PTC_RELAY_OFF
        return self.test_actuator(cmd) is not None

    def ac_relay_control(self, relay_on: bool) -> bool:
        cmd = ActuatorCommand.AC_RELAY_ON if relay_on else ActuatorCommand.AC_RELAY_OFF
        return self.test_actuator(cmd) is not None

    def test_injectors(self) -> bool:
        return self.test_actuator(ActuatorCommand.TEST_INJECTORS) is not None

    def test_coil(self) -> bool:
        return self.test_actuator(ActuatorCommand.FIRE_COIL) is not None

    def move_idle_bypass_motor(self, close: bool) -> Optional[int]:
        """Step the IAC one step; returns the new position."""
        cmd = ActuatorCommand.CLOSE_IAC if close else ActuatorCommand.OPEN_IAC
        return self.test_actuator(cmd)

    def cycle_relay(self, name: str, hold_s: float = None) -> bool:
        """Switch a relay on, wait, and switch it off again."""
        on_cmd, off_cmd = RELAY_PAIRS[name]
        hold_s = self.config.relay_hold_s if hold_s is None else hold_s
        if self.test_actuator(on_cmd) is None:
            return False
        time.sleep(hold_s)
        # The ECU may already have dropped the relay; the off command is still echoed.
        return self.test_actuator(off_cmd) is not None

    # ── IAC Convergence ──

    def _converge_iac(self, target: int, ceiling: int) -> IACResult:
        current = self._command_with_payload(DataCommand.GET_IAC_POSITION)
        if current is None:
            return IACResult(IACOutcome.READ_FAILED, None, target)
        if current == target:
            return IACResult(IACOutcome.ALREADY_AT_TARGET, current, target)

        if target > current and current < IAC_MAXIMUM:
            cmd = ActuatorCommand.OPEN_IAC
        else:
            cmd = ActuatorCommand.CLOSE_IAC
        log.info("IAC %02X -> %02X (%s)", current, target, cmd.name)

        attempts = 0
        outcome = IACOutcome.EXHAUSTED
        while current != target and attempts < ceiling:
            if self.cancelled:
                outcome = IACOutcome.CANCELLED
                break
            position = self._command_with_payload(cmd)
            attempts += 1
            self.emit("progress", current=attempts, total=ceiling, label="IAC")
            if position is None:
                outcome = IACOutcome.STEP_FAILED
                break
            current = position

        if current == target:
            outcome = IACOutcome.REACHED
        elif outcome is IACOutcome.EXHAUSTED:
            self._report(f"IAC stuck at {current:02X} after {attempts} steps "
                         f"(target {target:02X})", "warning")
        return IACResult(outcome, current, target, attempts)

    def converge_iac(self, target: int, max_attempts: int = None) -> IACResult:
        """
        Step the IAC valve until it reports *target*, a step fails, or
        *max_attempts* step commands have been sent. The lock is held for
        the whole run.
        """
        if not 0 <= target <= 0xFF:
            raise ValueError(f"IAC target out of range: {target:#x}")
        ceiling = self.config.iac_max_attempts if max_attempts is None else max_attempts
        return self._locked(self._converge_iac, target, ceiling,
                            default=IACResult(IACOutcome.READ_FAILED, None, target))

    def move_iac(self, target: int) -> bool:
        """True iff the valve ends at *target*, whatever stopped the loop."""
        return self.converge_iac(target).success

    def _iac_open_fully(self) -> bool:
        for _ in range(self.config.iac_max_attempts):
            if self.cancelled:
                return False
            position = self._command_with_payload(ActuatorCommand.OPEN_IAC)
            if position is None:
                return False
            if position >= IAC_MAXIMUM:
                return True
        return False

    def iac_open_fully(self) -> bool:
        """Step open until the valve reports IAC_MAXIMUM."""
        return self._locked(self._iac_open_fully, default=False)

    def _iac_close_fully(self, repeat: int) -> bool:
        # Diagnostic tools keep sending close well after the valve reads 0.
        for _ in range(self.config.iac_max_attempts + repeat):
            if self.cancelled:
                return False
            position = self._command_with_payload(ActuatorCommand.CLOSE_IAC)
            if position is None:
                return False
            if position == 0:
                repeat -= 1
                if repeat <= 0:
                    return True
        return False

    def iac_close_fully(self, repeat: int = None) -> bool:
        """Step closed, then keep closing *repeat* more times at position 0."""
        repeat = self.config.iac_close_repeat if repeat is None else repeat
        return self._locked(self._iac_close_fully, repeat, default=False)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5: DATALOGGER
# ═══════════════════════════════════════════════════════════════════════

class DataLogger:
    """
    Continuous sensor logger.
    Records decoded snapshots to CSV with timestamps.
    """

    DEFAULT_PARAMS = [
        "engine_rpm", "coolant_temp", "intake_air_temp", "map_kpa",
        "battery_voltage", "throttle_pot_voltage", "iac_position",
        "ignition_advance", "coil_time", "lambda_voltage_mv",
        "fuel_trim", "closed_loop", "fault_codes",
    ]

    def __init__(self, comm: MemsComm, interval_s: float = 0.0):
        self.comm = comm
        self.interval_s = interval_s
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._data_buffer: deque = deque(maxlen=10000)
        self._csv_file = None
        self._csv_path: Optional[str] = None
        self._sample_count = 0
        self._start_time = 0.0
        self.on_data: Optional[Callable[[SensorSnapshot], None]] = None
        self._params_to_log: List[str] = list(self.DEFAULT_PARAMS)

    def start(self, csv_path: str = None, params: List[str] = None) -> None:
        """Start logging in a background thread."""
        if self.running:
            return

        if params:
            self._params_to_log = params

        if csv_path is None:
            csv_path = str(default_log_dir() / f"datalog_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv")
        self._csv_path = csv_path
        self._csv_file = open(self._csv_path, "w", encoding="utf-8")
        self._csv_file.write("Timestamp,Elapsed_s," + ",".join(self._params_to_log) + "\n")

        self.running = True
        self._sample_count = 0
        self._start_time = time.monotonic()
        self._thread = threading.Thread(target=self._log_loop, daemon=True)
        self._thread.start()

        self.comm.emit("log", msg=f"Datalog started: {self._csv_path}", level="info")

    def stop(self) -> None:
        """Stop logging."""
        self.running = False
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        if self._csv_file:
            self._csv_file.close()
            self._csv_file = None

        self.comm.emit("log",
                       msg=f"Datalog stopped: {self._sample_count} samples in "
                           f"{time.monotonic() - self._start_time:.1f}s",
                       level="info")

    def _log_loop(self) -> None:
        """Main logging loop, runs in the background thread."""
        while self.running and not self.comm.cancelled:
            snapshot = self.comm.read()
            if snapshot:
                self._sample_count += 1
                elapsed = time.monotonic() - self._start_time
                ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]

                row = snapshot.as_dict()
                values = ["" if row.get(p) is None else str(row[p]) for p in self._params_to_log]
                if self._csv_file:
                    self._csv_file.write(f"{ts},{elapsed:.3f}," + ",".join(values) + "\n")
                    if self._sample_count % 10 == 0:
                        self._csv_file.flush()

                self._data_buffer.append(snapshot)
                if self.on_data:
                    self.on_data(snapshot)
                if self.interval_s:
                    time.sleep(self.interval_s)
            else:
                time.sleep(0.05)

    @property
    def latest(self) -> Optional[SensorSnapshot]:
        """Get the most recent snapshot."""
        return self._data_buffer[-1] if self._data_buffer else None

    @property
    def sample_rate(self) -> float:
        """Samples per second."""
        elapsed = time.monotonic() - self._start_time
        return self._sample_count / elapsed if self._sample_count and elapsed > 0 else 0.0


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6: CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

COMMANDS = (
    "read", "read-raw", "read-iac", "ptc", "fuelpump", "iac-close",
    "iac-open", "ac", "coil", "injectors",
    "clear-faults", "heartbeat", "move-iac", "datalog",
)

def cli_log_callback(msg: str, level: str = "info") -> None:
    """Print protocol messages to console."""
    prefix = {"info": "  ", "warning": "! ", "error": "x ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")

def format_snapshot(snapshot: SensorSnapshot) -> str:
    """Human-readable block for one snapshot."""
    unit = snapshot.temperature_unit
    lines = [
        f"RPM: {snapshot.engine_rpm}",
        f"Coolant (deg {unit}): {snapshot.coolant_temp:g}",
        f"Ambient (deg {unit}): {snapshot.ambient_temp:g}",
        f"Intake air (deg {unit}): {snapshot.intake_air_temp:g}",
        f"Fuel (deg {unit}): {snapshot.fuel_temp:g}",
        f"MAP (kPa): {snapshot.map_kpa:g}",
        f"Main voltage: {snapshot.battery_voltage:.1f}",
        f"Throttle pot voltage: {snapshot.throttle_pot_voltage:.2f}",
        f"Idle switch: {int(snapshot.idle_switch)}",
        f"Park/neutral switch: {int(snapshot.park_neutral_switch)}",
        f"Fault codes: {int(snapshot.fault_codes)}"
        + (f" ({', '.join(snapshot.faults)})" if snapshot.faults else ""),
        f"IAC position: {snapshot.iac_position}",
    ]
    if snapshot.lambda_voltage_mv is not None:
        lines += [
            f"Idle error: {snapshot.idle_error}",
            f"Ignition advance: {snapshot.ignition_advance:.1f}",
            f"Coil time (ms): {snapshot.coil_time:.3f}",
            f"Lambda voltage (mV): {snapshot.lambda_voltage_mv}",
            f"Fuel trim: {snapshot.fuel_trim}",
            f"Closed loop: {int(snapshot.closed_loop)}",
            f"Idle base position: {snapshot.idle_base_pos}",
        ]
    lines.append("-------------")
    return "\n".join(lines)

def format_raw(frame80: Frame80, frame7d: Optional[Frame7D] = None) -> str:
    """Comma-separated raw byte values, 0x80 frame first."""
    data = frame80.to_bytes() + (frame7d.to_bytes() if frame7d else b"")
    return ",".join(str(b) for b in data)

def parse_count(value: str) -> Optional[int]:
    """'inf' -> None (repeat forever), otherwise an int (0x.. allowed)."""
    if value == "inf":
        return None
    try:
        count = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid count: {value!r}")
    if count < 0:
        raise argparse.ArgumentTypeError("count must be >= 0")
    return count

def parse_iac_target(value: str) -> int:
    """IAC target byte, decimal or 0x.."""
    try:
        target = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid IAC target: {value!r}")
    if not 0 <= target <= 0xFF:
        raise argparse.ArgumentTypeError(f"IAC target must be 0..0xFF, got {value}")
    return target

def run_command(comm: MemsComm, args: argparse.Namespace) -> bool:
    """Run one iteration of *args.command*. True on success."""
    command = args.command
    if command == "read":
        snapshot = comm.read()
        if snapshot:
            print(format_snapshot(snapshot))
        return snapshot is not None
    if command == "read-raw":
        frames = comm.read_raw()
        if frames:
            print(format_raw(*frames))
        return frames is not None
    if command == "read-iac":
        position = comm.read_iac_position()
        if position is not None:
            print(f"0x{position:02X}")
        return position is not None
    if command in RELAY_PAIRS:
        return comm.cycle_relay(command)
    if command == "iac-close":
        return comm.iac_close_fully()
    if command == "iac-open":
        return comm.iac_open_fully()
    if command == "coil":
        return comm.test_coil()
    if command == "injectors":
        return comm.test_injectors()
    if command == "clear-faults":
        return comm.clear_faults()
    if command == "heartbeat":
        return comm.heartbeat()
    if command == "move-iac":
        result = comm.converge_iac(args.target, args.iac_attempts)
        pos = "--" if result.position is None else f"0x{result.position:02X}"
        print(f"IAC {pos} after {result.attempts} steps ({result.outcome.name})")
        return result.success
    raise ProtocolError(f"Unknown command: {command}")

def make_transport(args: argparse.Namespace) -> BaseTransport:
    if args.transport == "sim":
        return SimulatedECUTransport()
    if args.transport == "d2xx":
        return D2XXTransport(args.device_index, args.baud, args.timeout)
    return PySerialTransport(args.device, args.baud, args.timeout)

def run_datalog(comm: MemsComm, args: argparse.Namespace) -> int:
    logger = DataLogger(comm)
    logger.on_data = lambda s: print(
        f"\r  RPM={s.engine_rpm:5d}  ECT={s.coolant_temp:5.1f}  "
        f"IAC={s.iac_position:3d}  BATT={s.battery_voltage:4.1f}V  "
        f"FAULTS={int(s.fault_codes):02X}",
        end="", flush=True,
    )
    print("Starting datalog (Ctrl+C to stop)...")
    logger.start(args.output)
    try:
        while logger.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("\n\nStopping...")
    finally:
        logger.stop()
    return 0 if logger.latest else 1

def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    if args.command == "move-iac" and args.target is None:
        print("x move-iac needs --target")
        return 1

    config = CommConfig(
        baud=args.baud,
        read_timeout_ms=args.timeout,
        protocol=ProtocolVersion.LEGACY if args.legacy else ProtocolVersion.ROSCO,
        iac_max_attempts=args.iac_attempts,
    )
    comm = MemsComm(config)
    comm.on("log", cli_log_callback)

    print(f"Running command: {args.command}")
    if not comm.connect(make_transport(args)):
        print(f"x Error: could not open serial device ({args.device}).")
        return 1

    success = False
    try:
        ok, _ = comm.init_link()
        if not ok:
            print("x Error sending startup command.")
            return 1

        if args.command == "datalog":
            return run_datalog(comm, args)

        remaining = args.count
        while remaining is None or remaining > 0:
            if run_command(comm, args):
                success = True
            if remaining is not None:
                remaining -= 1
    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        comm.cancel()
        return 0 if success else 130
    finally:
        comm.cleanup()

    return 0 if success else 1


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7: ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memsdiag",
        description=f"{__app_name__} v{__version__}: {__target_ecu__} read/actuator/IAC tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /dev/ttyUSB0 read                    # One sensor snapshot
  %(prog)s /dev/ttyUSB0 read inf                # Read until Ctrl+C
  %(prog)s /dev/ttyUSB0 read-raw 10             # 10 raw frames as CSV
  %(prog)s /dev/ttyUSB0 fuelpump                # Run the fuel pump for 2 s
  %(prog)s /dev/ttyUSB0 move-iac --target 0x40  # Drive the IAC to a position
  %(prog)s sim read --transport sim             # Simulated ECU
  %(prog)s --list-ports                         # List serial ports
        """,
    )
    parser.add_argument("device", nargs="?", help="Serial device (e.g. /dev/ttyUSB0 or COM3)")
    parser.add_argument("command", nargs="?", choices=COMMANDS, help="Command to run")
    parser.add_argument("count", nargs="?", type=parse_count, default=1,
                        help="Repeat count, or 'inf' to repeat until Ctrl+C (default: 1)")
    parser.add_argument("--list-ports", action="store_true", help="List available serial ports")
    parser.add_argument("--transport", choices=["pyserial", "d2xx", "sim"], default="pyserial",
                        help="Transport type (sim = simulated ECU)")
    parser.add_argument("--device-index", type=int, default=0, help="FTDI device index (for D2XX)")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                        help=f"Baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--timeout", type=int, default=DEFAULT_READ_TIMEOUT_MS,
                        help=f"Inter-byte read timeout in ms (default: {DEFAULT_READ_TIMEOUT_MS})")
    parser.add_argument("--legacy", action="store_true",
                        help="Legacy frame layout (0x80 only, temperatures in deg F)")
    parser.add_argument("--target", type=parse_iac_target, help="IAC target for move-iac")
    parser.add_argument("--iac-attempts", type=int, default=DEFAULT_IAC_MAX_ATTEMPTS,
                        help=f"IAC step ceiling (default: {DEFAULT_IAC_MAX_ATTEMPTS})")
    parser.add_argument("--output", "-o", help="CSV output path (datalog)")
    parser.add_argument("--log-dir", type=Path, help="Log file directory (default: logs/)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show protocol debug on console")
    return parser


def main(argv: List[str] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(log_dir=args.log_dir,
                  console_level=logging.DEBUG if args.verbose else logging.WARNING)

    if args.list_ports:
        ports = PySerialTransport.list_ports()
        if ports:
            print("Available ports:")
            for p in ports:
                print(f"  {p}")
        else:
            print("No serial ports found")
        return 0

    if not args.device or not args.command:
        parser.print_help()
        return 0

    try:
        return run_cli(args)
    except Exception as e:
        print(f"\nx Error: {e}")
        log.exception("CLI error")
        return 1


if __name__ == "__main__":
    sys.exit(main())
