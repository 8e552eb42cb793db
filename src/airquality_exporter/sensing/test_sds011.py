import pytest

from airquality_exporter.errors import (
    ChecksumError,
    InvalidCycle,
    PortOpenError,
    ResponseTimeout,
)
from airquality_exporter.sensing.sds011 import SDS011, ReportingMode, SDS011Protocol, open_sds011
from airquality_exporter.utils.mocks import (
    BadChecksumFakeSDS011,
    FakeSDS011,
    SilentFakeSDS011,
)


def test_command_frame_layout():
    """Commands carry 13 data bytes, the broadcast id and a checksum"""
    frame = SDS011Protocol().command(2, 1, 1)

    assert frame == bytes.fromhex("aab4020101" + "00" * 10 + "ffff02ab")
    assert len(frame) == 19


def test_set_passive_mode(fake_sds011):
    sensor = SDS011(fake_sds011)
    sensor.set_passive_mode()

    assert fake_sds011.passive
    assert sensor.mode is ReportingMode.PASSIVE


def test_set_active_mode(fake_sds011):
    sensor = SDS011(fake_sds011)
    sensor.set_passive_mode()
    sensor.set_active_mode()

    assert not fake_sds011.passive
    assert sensor.mode is ReportingMode.ACTIVE


def test_get_and_set_cycle():
    fake = FakeSDS011(cycle=3)
    sensor = SDS011(fake)
    sensor.set_passive_mode()

    assert sensor.get_cycle() == 3
    sensor.set_cycle(5)
    assert fake.cycle == 5
    assert sensor.get_cycle() == 5


@pytest.mark.parametrize("minutes", [-1, 256])
def test_invalid_cycle_is_rejected_before_writing(minutes):
    fake = FakeSDS011()
    sensor = SDS011(fake)

    with pytest.raises(InvalidCycle):
        sensor.set_cycle(minutes)
    assert fake.commands == []


def test_read_measurement_passive():
    fake = FakeSDS011(pm25=12.3, pm10=20.1)
    sensor = SDS011(fake)
    sensor.set_passive_mode()

    reading = sensor.read_measurement()

    assert reading.pm25 == pytest.approx(12.3)
    assert reading.pm10 == pytest.approx(20.1)
    assert fake.commands[-1] == SDS011Protocol().command(4)


def test_read_measurement_active_waits_for_stream():
    fake = FakeSDS011(pm25=7.5, pm10=9.0)
    sensor = SDS011(fake)
    sensor.set_active_mode()
    sent = len(fake.commands)

    reading = sensor.read_measurement()

    assert (reading.pm25, reading.pm10) == (7.5, 9.0)
    assert len(fake.commands) == sent  # nothing requested


def test_unrelated_frames_are_skipped():
    """Measurements streamed while a command is pending do not answer it"""
    fake = FakeSDS011(cycle=4, chatty=True)
    sensor = SDS011(fake)

    assert sensor.get_cycle() == 4


def test_silent_sensor_times_out():
    sensor = SDS011(SilentFakeSDS011(), response_timeout=0.05)

    with pytest.raises(ResponseTimeout):
        sensor.set_passive_mode()
    assert sensor.timeouts == 1
    assert sensor.mode is None


def test_bad_checksum():
    sensor = SDS011(BadChecksumFakeSDS011())

    with pytest.raises(ChecksumError):
        sensor.get_cycle()
    assert sensor.crc_errors == 1


def test_close_closes_port(fake_sds011):
    SDS011(fake_sds011).close()
    assert fake_sds011.closed


def test_open_missing_port():
    with pytest.raises(PortOpenError, match="/dev/does-not-exist"):
        open_sds011("/dev/does-not-exist")
