import logging
from typing import Optional, Protocol

from prometheus_client import REGISTRY, CollectorRegistry, Gauge

from airquality_exporter import __version__

logger = logging.getLogger(__name__)

PM25_LABEL = "pm2.5"
PM10_LABEL = "pm10"


class Measurement(Protocol):
    pm25: float
    pm10: float


class MetricsSink:
    """Labeled PM gauge living in a prometheus registry.

    The registry is shared with the HTTP endpoint, which reads it while the
    device controller writes to it; prometheus_client synchronizes access.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY
        self.pm = Gauge(
            "airquality_pm",
            "Airquality PM metric",
            ["type"],
            registry=self.registry,
        )
        self.build_info = Gauge(
            "airquality_exporter_build_info",
            "Exporter version",
            ["version"],
            registry=self.registry,
        )
        self.build_info.labels(version=__version__).set(1)

    def publish(self, measurement: Measurement) -> None:
        self.pm.labels(type=PM25_LABEL).set(measurement.pm25)
        self.pm.labels(type=PM10_LABEL).set(measurement.pm10)
        logger.debug("Published measurement", extra={"pm25": measurement.pm25, "pm10": measurement.pm10})

    def value(self, label: str) -> Optional[float]:
        """Current gauge value for ``label``, None if never set."""
        return self.registry.get_sample_value("airquality_pm", {"type": label})
