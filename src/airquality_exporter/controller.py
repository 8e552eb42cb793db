import logging
import os
import sys
import threading
from enum import Enum
from typing import Callable, Optional, Protocol

from airquality_exporter.errors import StartupError
from airquality_exporter.executor import DEFAULT_RETRIES, DEFAULT_TIMEOUT_SEC, execute_with_retry
from airquality_exporter.metrics import Measurement, MetricsSink
from airquality_exporter.sensing.sds011 import open_sds011

logger = logging.getLogger(__name__)


class Sensor(Protocol):
    """Operations the controller needs from a sensor driver."""

    def set_passive_mode(self) -> None: ...
    def set_active_mode(self) -> None: ...
    def get_cycle(self) -> int: ...
    def set_cycle(self, minutes: int) -> None: ...
    def read_measurement(self) -> Measurement: ...
    def close(self) -> None: ...


class ControllerState(str, Enum):
    OPENING = "opening"
    ENTERING_PASSIVE = "entering_passive"
    CONFIGURING_CYCLE = "configuring_cycle"
    ENTERING_ACTIVE = "entering_active"
    READING = "reading"
    FAILED = "failed"


def fatal_exit(error: BaseException) -> None:
    """Terminate the whole process with status 1.

    Called from the controller thread, where ``sys.exit`` would only end the
    thread, so logging is flushed and the process exits immediately.
    """
    logging.shutdown()
    sys.stdout.flush()
    os._exit(1)


class DeviceController(threading.Thread):
    """Thread that initializes the sensor and republishes its readings.

    Startup runs ``OPENING -> ENTERING_PASSIVE -> CONFIGURING_CYCLE ->
    ENTERING_ACTIVE`` and any failure there is fatal. The ``READING`` loop
    that follows never gives up: failed reads are logged and retried.
    """

    daemon = True

    def __init__(
        self,
        sensor_factory: Callable[[], Sensor],
        sink: MetricsSink,
        cycle: int,
        force_set_cycle: bool = True,
        *,
        command_retries: int = DEFAULT_RETRIES,
        command_timeout: float = DEFAULT_TIMEOUT_SEC,
        read_error_delay: float = 0.0,
        on_fatal: Callable[[BaseException], None] = fatal_exit,
    ):
        super().__init__(name="device-controller")
        self.sensor_factory = sensor_factory
        self.sink = sink
        self.cycle = cycle
        self.force_set_cycle = force_set_cycle
        self.command_retries = command_retries
        self.command_timeout = command_timeout
        self.read_error_delay = read_error_delay
        self.on_fatal = on_fatal
        self.state = ControllerState.OPENING
        self.s_stop = threading.Event()

    def stop(self) -> None:
        self.s_stop.set()

    def _enter(self, state: ControllerState) -> None:
        self.state = state
        logger.debug("Controller state transition", extra={"state": state.value})

    def _open(self) -> Sensor:
        self._enter(ControllerState.OPENING)
        try:
            return self.sensor_factory()
        except Exception as e:
            raise StartupError(self.state.value, "Cannot create sensor instance", e) from e

    def _enter_passive(self, sensor: Sensor) -> None:
        self._enter(ControllerState.ENTERING_PASSIVE)
        try:
            execute_with_retry(
                sensor.set_passive_mode,
                self.command_retries,
                self.command_timeout,
                name="set_passive_mode",
            )
        except Exception as e:
            raise StartupError(self.state.value, "Cannot switch sensor to passive mode", e) from e

    def _set_cycle(self, sensor: Sensor) -> None:
        logger.info("Setting sensor cycle", extra={"minutes": self.cycle})
        try:
            sensor.set_cycle(self.cycle)
        except Exception as e:
            raise StartupError(self.state.value, "Cannot set current cycle", e) from e

    def _configure_cycle(self, sensor: Sensor) -> None:
        self._enter(ControllerState.CONFIGURING_CYCLE)
        if self.force_set_cycle:
            self._set_cycle(sensor)
            return

        try:
            current = sensor.get_cycle()
        except Exception as e:
            raise StartupError(self.state.value, "Cannot get current cycle", e) from e

        if current != self.cycle:
            self._set_cycle(sensor)
        else:
            logger.debug("Sensor cycle already set", extra={"minutes": current})

    def _enter_active(self, sensor: Sensor) -> None:
        self._enter(ControllerState.ENTERING_ACTIVE)
        logger.info("Switching sensor to active mode")
        try:
            sensor.set_active_mode()
        except Exception as e:
            raise StartupError(self.state.value, "Cannot switch sensor to active mode", e) from e

    def startup(self) -> Sensor:
        """Open and configure the sensor, leaving it in active mode.

        Raises:
            StartupError: A step failed; ``state`` names the step.
        """
        sensor = self._open()
        try:
            self._enter_passive(sensor)
            self._configure_cycle(sensor)
            self._enter_active(sensor)
        except StartupError:
            sensor.close()
            raise
        return sensor

    def read_once(self, sensor: Sensor) -> bool:
        """Read one measurement and publish it. Returns False if the read failed."""
        try:
            point = sensor.read_measurement()
        except Exception as e:
            logger.error("Getting sensor measurement error", extra={"error": str(e)})
            return False

        logger.info("Sensor measurement results", extra={"pm25": point.pm25, "pm10": point.pm10})
        self.sink.publish(point)
        return True

    def read_loop(self, sensor: Sensor) -> None:
        """Read measurements until ``stop()`` is called."""
        self._enter(ControllerState.READING)
        while not self.s_stop.is_set():
            if not self.read_once(sensor) and self.read_error_delay:
                self.s_stop.wait(self.read_error_delay)

    def run(self) -> None:
        try:
            sensor = self.startup()
        except StartupError as e:
            self.state = ControllerState.FAILED
            logger.error(str(e), extra={"state": e.state, "error": str(e.cause)})
            self.on_fatal(e)
            return

        try:
            self.read_loop(sensor)
        finally:
            sensor.close()
            logger.info("Device controller stopped")


def make_controller(
    settings, sink: MetricsSink, sensor_factory: Optional[Callable[[], Sensor]] = None
) -> DeviceController:
    """Build a controller from settings, opening the configured serial port."""

    def open_configured_sensor() -> Sensor:
        return open_sds011(
            settings.PORT_PATH,
            baudrate=settings.SERIAL_BAUDRATE,
            timeout=settings.SERIAL_TIMEOUT_SEC,
            response_timeout=settings.RESPONSE_TIMEOUT_SEC,
        )

    return DeviceController(
        sensor_factory or open_configured_sensor,
        sink,
        settings.CYCLE,
        settings.FORCE_SET_CYCLE,
        command_retries=settings.COMMAND_RETRIES,
        command_timeout=settings.COMMAND_TIMEOUT_SEC,
        read_error_delay=settings.READ_ERROR_DELAY_SEC,
    )
