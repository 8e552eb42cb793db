from airquality_exporter.config.settings import Settings, get_settings, parse_listen_address

__all__ = ["Settings", "get_settings", "parse_listen_address"]
