"""Environment-driven configuration.

Every field can be set through an ``ENGINE_``-prefixed environment
variable (``ENGINE_API_VERSION``, ``ENGINE_READ_TIMEOUT``...). The engine
address also honours the conventional ``DOCKER_HOST``.
"""

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from engine_client.transport.connect import (
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_WRITE_TIMEOUT,
    ConnectionDescriptor,
    MtlsMaterial,
)

DEFAULT_HOST = "unix:///var/run/docker.sock"
DEFAULT_API_VERSION = "v1.41"
DEFAULT_SPEC_URL_TEMPLATE = "https://docs.docker.com/reference/api/engine/version/{version}.yaml"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ENGINE_", populate_by_name=True)

    host: str = Field(
        default=DEFAULT_HOST,
        validation_alias=AliasChoices("ENGINE_HOST", "DOCKER_HOST"),
    )
    api_version: str = DEFAULT_API_VERSION

    # Local directory holding <version>.yaml documents, checked before downloading
    spec_dir: str | None = None
    spec_url_template: str = DEFAULT_SPEC_URL_TEMPLATE
    spec_download_timeout: float = 30.0

    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    write_timeout: float = DEFAULT_WRITE_TIMEOUT
    call_timeout: float = DEFAULT_CALL_TIMEOUT

    tls_ca: str | None = None
    tls_cert: str | None = None
    tls_key: str | None = None

    def connection(self, uri: str | None = None) -> ConnectionDescriptor:
        """Build a connection descriptor from these settings."""
        mtls = None
        if self.tls_ca and self.tls_cert and self.tls_key:
            mtls = MtlsMaterial(ca=self.tls_ca, cert=self.tls_cert, key=self.tls_key)
        return ConnectionDescriptor(
            uri=uri or self.host,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            write_timeout=self.write_timeout,
            call_timeout=self.call_timeout,
            mtls=mtls,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
