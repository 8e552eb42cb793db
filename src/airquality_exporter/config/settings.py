# airquality_exporter/config/settings.py

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the exporter."""

    model_config = SettingsConfigDict(env_prefix="AIRQUALITY_", env_file=".env", extra="ignore")

    # http
    LISTEN_ADDRESS: str = ":8080"

    # sensor
    PORT_PATH: str = "/dev/ttyUSB0"
    CYCLE: int = Field(default=5, ge=0, le=255)  # minutes
    FORCE_SET_CYCLE: bool = True
    SERIAL_BAUDRATE: int = 9600
    SERIAL_TIMEOUT_SEC: float = Field(default=0.5, gt=0)
    RESPONSE_TIMEOUT_SEC: float = Field(default=3.0, gt=0)

    # device commands
    COMMAND_RETRIES: int = Field(default=0, ge=0)
    COMMAND_TIMEOUT_SEC: float = Field(default=10.0, gt=0)
    READ_ERROR_DELAY_SEC: float = Field(default=0.0, ge=0)

    # logging
    VERBOSE: bool = False


def get_settings(**overrides) -> Settings:
    """Build settings from the environment, letting explicit overrides win.

    Overrides whose value is None are ignored so unset CLI flags fall through
    to environment variables, the .env file and the defaults.
    """
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split a ``host:port`` listen address.

    An empty host (``":8080"``) binds all interfaces.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid listen address: {address!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"Invalid listen port: {port_num}")
    host = host.strip("[]") or "0.0.0.0"
    return host, port_num
