from airquality_exporter.sensing.sds011 import (
    SDS011,
    ReportingMode,
    SDS011Protocol,
    SDS011Reading,
    open_sds011,
)

__all__ = ["SDS011", "ReportingMode", "SDS011Protocol", "SDS011Reading", "open_sds011"]
