import logging
import struct
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import serial

from airquality_exporter.errors import (
    ChecksumError,
    InvalidCycle,
    InvalidResponse,
    PortOpenError,
    ResponseTimeout,
)


class SerialLike(Protocol):
    """Protocol defining the interface for serial communication.

    This protocol defines the minimum interface required for serial
    communication with the SDS011 sensor. ``serial.Serial`` satisfies it,
    as does any test double implementing these methods.
    """

    def read(self, n: int) -> bytes:
        """Read up to n bytes, returning fewer if the port read timeout elapses."""
        ...

    def write(self, b: bytes) -> int:
        """Write bytes to the serial port and return the number written."""
        ...

    def reset_input_buffer(self) -> None:
        """Discard anything waiting in the input buffer."""
        ...

    def close(self) -> None:
        """Close the serial port."""
        ...


class ReportingMode(str, Enum):
    ACTIVE = "active"
    PASSIVE = "passive"


@dataclass
class SDS011Reading:
    """A single measurement from the SDS011 sensor.

    Attributes:
        pm25: PM2.5 concentration in μg/m³.
        pm10: PM10 concentration in μg/m³.
    """

    pm25: float
    pm10: float


@dataclass
class SDS011Protocol:
    """Frame constants of the SDS011 serial protocol.

    Commands sent to the sensor are 19 bytes long: head, command id, 13 data
    bytes (the first one selects the sub-command), a 2 byte device id,
    checksum and tail. Replies are 10 bytes: head, reply id, 6 data bytes,
    checksum and tail. Checksums are the low byte of the sum of the data
    bytes (data and device id for commands).

    Attributes:
        head: First byte of every frame.
        tail: Last byte of every frame.
        command_id: Command id byte of host-to-sensor frames.
        data_reply: Reply id of measurement frames.
        command_reply: Reply id of command acknowledgements.
        command_length: Length of host-to-sensor frames in bytes.
        reply_length: Length of sensor-to-host frames in bytes.
        command_data_length: Number of data bytes in a command frame.
        all_devices: Device id addressing every sensor on the line.
        report_mode_cmd: Sub-command to query or set the reporting mode.
        query_cmd: Sub-command requesting a measurement in passive mode.
        working_period_cmd: Sub-command to query or set the working period.
    """

    head: int = 0xAA
    tail: int = 0xAB
    command_id: int = 0xB4
    data_reply: int = 0xC0
    command_reply: int = 0xC5
    command_length: int = 19
    reply_length: int = 10
    command_data_length: int = 13
    all_devices: bytes = b"\xff\xff"
    report_mode_cmd: int = 2
    query_cmd: int = 4
    working_period_cmd: int = 8

    # data byte 2 of mode and period commands
    action_query: int = 0
    action_set: int = 1

    # data byte 3 of the reporting mode command
    mode_active: int = 0
    mode_passive: int = 1

    def command(self, sub_command: int, *data: int) -> bytes:
        """Build a command frame addressed to every device."""
        payload = bytes([sub_command, *data]).ljust(self.command_data_length, b"\x00")
        body = payload + self.all_devices
        checksum = sum(body) & 0xFF
        return bytes([self.head, self.command_id]) + body + bytes([checksum, self.tail])

    def checksum_ok(self, frame: bytes) -> bool:
        return sum(frame[2:8]) & 0xFF == frame[8]


class SDS011:
    """Driver class for the SDS011 particulate matter sensor.

    Provides the synchronous operations the device controller relies on:
    switching between active and passive reporting, reading and setting the
    working period (cycle) and reading one measurement.

    A command blocks until the matching reply arrives or ``response_timeout``
    elapses. Frames that arrive in the meantime and do not answer the
    command (measurements streamed in active mode, replies to earlier
    commands) are skipped.

    Attributes:
        protocol: Protocol constants.
        mode: Reporting mode last acknowledged by the sensor, None until known.
        crc_errors: Counter for checksum errors encountered.
        timeouts: Counter for reply timeouts encountered.
    """

    def __init__(
        self,
        port: SerialLike,
        protocol: Optional[SDS011Protocol] = None,
        response_timeout: float = 3.0,
    ):
        self._s = port
        self.protocol = protocol or SDS011Protocol()
        self.response_timeout = response_timeout
        self.mode: Optional[ReportingMode] = None
        self.crc_errors = 0
        self.timeouts = 0

        self.logger = logging.getLogger(f"{__name__}.SDS011")

    def _read_frame(self, deadline: Optional[float]) -> bytes:
        """Read the next complete reply frame from the port.

        Args:
            deadline: ``time.monotonic()`` value after which to give up, or
                None to wait indefinitely.

        Raises:
            ResponseTimeout: No complete frame arrived before the deadline.
            InvalidResponse: The frame is not terminated by the tail byte.
            ChecksumError: The frame checksum does not match.
        """
        head = bytes([self.protocol.head])
        while True:
            if deadline is not None and time.monotonic() >= deadline:
                self.timeouts += 1
                raise ResponseTimeout("No reply from sensor")

            b = self._s.read(1)
            if b != head:
                continue

            rest = self._s.read(self.protocol.reply_length - 1)
            frame = head + rest
            if len(frame) != self.protocol.reply_length:
                self.timeouts += 1
                raise ResponseTimeout(
                    f"Incomplete frame: expected {self.protocol.reply_length}, "
                    f"got {len(frame)} bytes"
                )

            self.logger.debug("Received frame: %s", frame.hex())

            if frame[-1] != self.protocol.tail:
                raise InvalidResponse(f"Bad frame tail: {frame.hex()}")

            if not self.protocol.checksum_ok(frame):
                self.crc_errors += 1
                self.logger.warning(
                    "Checksum validation failed: expected=%02x, calculated=%02x",
                    frame[8],
                    sum(frame[2:8]) & 0xFF,
                )
                raise ChecksumError(f"Bad frame checksum: {frame.hex()}")

            return frame

    def _await_reply(
        self, reply_id: int, sub_command: Optional[int], timeout: Optional[float]
    ) -> bytes:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            frame = self._read_frame(deadline)
            if frame[1] == reply_id and (sub_command is None or frame[2] == sub_command):
                return frame
            self.logger.debug("Skipping unrelated frame: %s", frame.hex())

    def _command(self, sub_command: int, *data: int) -> bytes:
        """Send a command and return its acknowledgement frame."""
        cmd = self.protocol.command(sub_command, *data)
        self.logger.debug("Sending command: %s", cmd.hex())
        self._s.reset_input_buffer()
        self._s.write(cmd)
        return self._await_reply(self.protocol.command_reply, sub_command, self.response_timeout)

    def _set_mode(self, mode: ReportingMode) -> None:
        value = self.protocol.mode_passive if mode is ReportingMode.PASSIVE else self.protocol.mode_active
        reply = self._command(self.protocol.report_mode_cmd, self.protocol.action_set, value)
        if reply[4] != value:
            raise InvalidResponse(f"Sensor did not switch to {mode.value} mode: {reply.hex()}")
        self.mode = mode
        self.logger.debug("Sensor in %s mode", mode.value)

    def set_passive_mode(self) -> None:
        """Make the sensor report only when queried."""
        self._set_mode(ReportingMode.PASSIVE)

    def set_active_mode(self) -> None:
        """Make the sensor stream measurements on its own."""
        self._set_mode(ReportingMode.ACTIVE)

    def get_cycle(self) -> int:
        """Return the working period in minutes (0 means continuous)."""
        reply = self._command(self.protocol.working_period_cmd, self.protocol.action_query)
        return reply[4]

    def set_cycle(self, minutes: int) -> None:
        """Set the working period in minutes.

        The value is stored on the sensor and survives power cycles.

        Raises:
            InvalidCycle: ``minutes`` does not fit in an unsigned byte.
        """
        if not 0 <= minutes <= 255:
            raise InvalidCycle(f"Cycle must be between 0 and 255 minutes, got {minutes}")
        reply = self._command(self.protocol.working_period_cmd, self.protocol.action_set, minutes)
        if reply[4] != minutes:
            raise InvalidResponse(f"Sensor did not accept cycle {minutes}: {reply.hex()}")

    def read_measurement(self) -> SDS011Reading:
        """Read one measurement.

        In passive mode a query is sent and the reply awaited for at most
        ``response_timeout``. Otherwise the next streamed measurement is
        awaited without a deadline, since in active mode the sensor reports
        once per cycle.
        """
        if self.mode is ReportingMode.PASSIVE:
            self._s.reset_input_buffer()
            self._s.write(self.protocol.command(self.protocol.query_cmd))
            frame = self._await_reply(self.protocol.data_reply, None, self.response_timeout)
        else:
            frame = self._await_reply(self.protocol.data_reply, None, None)

        pm25, pm10 = struct.unpack("<HH", frame[2:6])
        reading = SDS011Reading(pm25=pm25 / 10, pm10=pm10 / 10)
        self.logger.debug("Parsed reading: PM2.5=%s, PM10=%s μg/m³", reading.pm25, reading.pm10)
        return reading

    def close(self) -> None:
        self._s.close()


def open_sds011(
    path: str,
    baudrate: int = 9600,
    timeout: float = 0.5,
    response_timeout: float = 3.0,
) -> SDS011:
    """Open the serial device at ``path`` and wrap it in an SDS011 driver.

    Raises:
        PortOpenError: The port does not exist, is busy or cannot be configured.
    """
    try:
        port = serial.Serial(path, baudrate=baudrate, timeout=timeout)
    except (serial.SerialException, ValueError) as e:
        raise PortOpenError(f"Cannot open serial port {path}: {e}") from e
    return SDS011(port, response_timeout=response_timeout)
