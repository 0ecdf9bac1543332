from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def split_listen_address(address: str) -> tuple[str, int]:
    """Split a ``host:port`` listen address.

    Accepts ``:9901`` (all interfaces), ``127.0.0.1:9901`` and ``[::1]:9901``.
    """

    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {address!r}, expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port_number = int(port)
    if port_number > 65535:
        raise ValueError(f"invalid port in listen address {address!r}")
    return host or "0.0.0.0", port_number


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    prom_listen: str = Field(default=":9901", alias="PROM_LISTEN")
    prom_path: str = Field(default="/metrics", alias="PROM_PATH")
    prom_max_requests_in_flight: int = Field(default=10, alias="PROM_MAX_REQUESTS_IN_FLIGHT")
    prom_enable_openmetrics: bool = Field(default=True, alias="PROM_ENABLE_OPENMETRICS")

    debug_level: int = Field(default=11, alias="DEBUG_LEVEL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    sleep_seconds: float = Field(default=1.0, alias="SLEEP_SECONDS")
    worker_pairs: int = Field(default=5, alias="WORKER_PAIRS")
    shutdown_grace_seconds: float = Field(default=2.0, alias="SHUTDOWN_GRACE_SECONDS")

    build_commit: str = Field(default="", alias="BUILD_COMMIT")
    build_date: str = Field(default="", alias="BUILD_DATE")

    @field_validator("prom_listen")
    @classmethod
    def _check_listen(cls, value: str) -> str:
        split_listen_address(value)
        return value

    @field_validator("prom_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("metrics path must start with '/'")
        return value

    @field_validator("prom_max_requests_in_flight", "worker_pairs")
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @property
    def listen_host(self) -> str:
        return split_listen_address(self.prom_listen)[0]

    @property
    def listen_port(self) -> int:
        return split_listen_address(self.prom_listen)[1]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
