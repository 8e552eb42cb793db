import io
import struct
import threading
from collections import deque
from typing import Callable, Iterable, Optional

from typing_extensions import Buffer

from airquality_exporter.errors import ResponseTimeout
from airquality_exporter.sensing.sds011 import SDS011Protocol, SDS011Reading


class FakeSDS011(io.BytesIO):
    """Mock SDS011 sensor that speaks the serial protocol.

    Simulates:
    - Reporting mode queries and changes with C5 acknowledgements
    - Working period queries and changes
    - Measurement frames, on request in passive mode and streamed in active mode

    The sensor starts in active mode with a working period of ``cycle`` minutes.
    With ``chatty`` set, every acknowledgement is preceded by a measurement
    frame, as happens when a command is sent while the sensor is streaming.
    """

    def __init__(
        self,
        *,
        pm25: float = 12.3,
        pm10: float = 20.1,
        cycle: int = 0,
        chatty: bool = False,
        protocol: Optional[SDS011Protocol] = None,
    ):
        self.pm25 = pm25
        self.pm10 = pm10
        self.cycle = cycle
        self.chatty = chatty
        self.protocol = protocol or SDS011Protocol()

        self.passive = False
        self.commands: list[bytes] = []
        self._next_response = b""

        super().__init__(b"")

    def _reply(self, reply_id: int, data: bytes) -> bytes:
        body = data.ljust(4, b"\x00") + b"\xab\xcd"
        checksum = sum(body) & 0xFF
        return bytes([self.protocol.head, reply_id]) + body + bytes([checksum, self.protocol.tail])

    def _data_frame(self) -> bytes:
        values = struct.pack("<HH", round(self.pm25 * 10), round(self.pm10 * 10))
        return self._reply(self.protocol.data_reply, values)

    def _ack(self, data: bytes) -> bytes:
        frame = self._reply(self.protocol.command_reply, data)
        if self.chatty:
            return self._data_frame() + frame
        return frame

    def write(self, data: Buffer) -> int:
        """Handle commands sent to the sensor."""
        cmd = bytes(data)
        self.commands.append(cmd)
        p = self.protocol
        if len(cmd) != p.command_length or cmd[0] != p.head or cmd[1] != p.command_id:
            return len(cmd)

        sub, action, value = cmd[2], cmd[3], cmd[4]
        if sub == p.report_mode_cmd:
            if action == p.action_set:
                self.passive = value == p.mode_passive
            mode = p.mode_passive if self.passive else p.mode_active
            self._next_response = self._ack(bytes([sub, action, mode]))
        elif sub == p.working_period_cmd:
            if action == p.action_set:
                self.cycle = value
            self._next_response = self._ack(bytes([sub, action, self.cycle]))
        elif sub == p.query_cmd and self.passive:
            self._next_response = self._data_frame()
        return len(cmd)

    def read(self, n: int | None = -1) -> bytes:
        """Return pending response bytes; in active mode a new measurement is always pending."""
        if not self._next_response and not self.passive:
            self._next_response = self._data_frame()
        if n is None or n < 0:
            n = len(self._next_response)
        response, self._next_response = self._next_response[:n], self._next_response[n:]
        return response

    def reset_input_buffer(self) -> None:
        """Reset the input buffer (pyserial compatibility)."""
        self._next_response = b""


class SilentFakeSDS011(FakeSDS011):
    """Mock that never answers, like a disconnected sensor."""

    def read(self, n: int | None = -1) -> bytes:
        return b""


class BadChecksumFakeSDS011(FakeSDS011):
    """Mock that corrupts the checksum of every frame it sends."""

    def _reply(self, reply_id: int, data: bytes) -> bytes:
        frame = super()._reply(reply_id, data)
        return frame[:-2] + bytes([(frame[-2] + 1) & 0xFF]) + frame[-1:]


class FakeSensor:
    """Driver-level fake recording every call made by the controller.

    Args:
        cycle: Value returned by ``get_cycle``.
        measurements: Readings or exceptions returned/raised by successive
            ``read_measurement`` calls.
        errors: Exceptions to raise, keyed by method name.
        hang: Method names that block until ``release`` is set.
        when_exhausted: Called once the last queued measurement is consumed.
    """

    def __init__(
        self,
        *,
        cycle: int = 5,
        measurements: Iterable[SDS011Reading | Exception] = (),
        errors: Optional[dict[str, Exception]] = None,
        hang: Iterable[str] = (),
        when_exhausted: Optional[Callable[[], None]] = None,
    ):
        self.cycle = cycle
        self.calls: list[str] = []
        self.set_cycle_calls: list[int] = []
        self.closed = False
        self.release = threading.Event()
        self.when_exhausted = when_exhausted
        self._measurements = deque(measurements)
        self._errors = errors or {}
        self._hang = set(hang)

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self._hang:
            self.release.wait()
        if name in self._errors:
            raise self._errors[name]

    def set_passive_mode(self) -> None:
        self._call("set_passive_mode")

    def set_active_mode(self) -> None:
        self._call("set_active_mode")

    def get_cycle(self) -> int:
        self._call("get_cycle")
        return self.cycle

    def set_cycle(self, minutes: int) -> None:
        self._call("set_cycle")
        self.set_cycle_calls.append(minutes)
        self.cycle = minutes

    def read_measurement(self) -> SDS011Reading:
        self._call("read_measurement")
        if not self._measurements:
            raise ResponseTimeout("No reply from sensor")
        item = self._measurements.popleft()
        if not self._measurements and self.when_exhausted:
            self.when_exhausted()
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True
