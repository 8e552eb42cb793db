"""Prometheus exporter for the SDS011 particulate matter sensor."""

__version__ = "0.26"
