import pytest
from prometheus_client import CollectorRegistry

from airquality_exporter.metrics import MetricsSink
from airquality_exporter.utils.mocks import FakeSDS011


@pytest.fixture()
def registry():
    return CollectorRegistry()


@pytest.fixture()
def sink(registry):
    return MetricsSink(registry)


@pytest.fixture()
def fake_sds011():
    fake = FakeSDS011()
    yield fake
    fake.reset_input_buffer()
