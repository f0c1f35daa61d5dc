"""
hproxy Settings
Pydantic-based configuration with support for env vars, .env and JSON config files.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_CONFIG_FILE = Path("proxyconfig.json")
DEFAULT_ENV_FILE = Path(".env")


def parse_ip_list(value: Any) -> list[str]:
    """
    Parse an IP list from its env/JSON representation.

    Accepts a JSON array, an empty value, "[]", "()" or a comma-separated
    string. Lists are returned unchanged.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]

    text = str(value).strip()
    if text in ("", "[]", "()"):
        return []

    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid IP list: {text}") from e
        if not isinstance(parsed, list):
            raise ValueError(f"IP list must be a JSON array: {text}")
        return [str(v).strip() for v in parsed if str(v).strip()]

    return [ip.strip() for ip in text.split(",") if ip.strip()]


class ProxySettings(BaseSettings):
    """
    Admission policy and origin settings.

    Field aliases are the variable names used in proxyconfig.json and in the
    environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    hostname: str = Field(default="", alias="PROXY_HOSTNAME")
    protocol: str = Field(default="https", alias="PROXY_PROTOCOL")
    pathname_regex: str = Field(default="", alias="PATHNAME_REGEX")

    ua_whitelist_regex: str = Field(default="", alias="UA_WHITELIST_REGEX")
    ua_blacklist_regex: str = Field(default="", alias="UA_BLACKLIST_REGEX")

    ip_whitelist_regex: str = Field(default="", alias="IP_WHITELIST_REGEX")
    ip_blacklist_regex: str = Field(default="", alias="IP_BLACKLIST_REGEX")
    ip_whitelist: Annotated[list[str], NoDecode] = Field(default=[], alias="IP_WHITELIST")
    ip_blacklist: Annotated[list[str], NoDecode] = Field(default=[], alias="IP_BLACKLIST")

    region_whitelist_regex: str = Field(default="", alias="REGION_WHITELIST_REGEX")
    region_blacklist_regex: str = Field(default="", alias="REGION_BLACKLIST_REGEX")

    redirect_url: str = Field(default="", alias="URL302")
    debug: bool = Field(default=False, alias="DEBUG")

    # Externally visible hostname used when rewriting bodies (default: inbound Host)
    public_hostname: str = Field(default="", alias="PUBLIC_HOSTNAME")

    @field_validator("ip_whitelist", "ip_blacklist", mode="before")
    @classmethod
    def parse_ip_lists(cls, v):
        return parse_ip_list(v)

    @field_validator("protocol", mode="before")
    @classmethod
    def parse_protocol(cls, v):
        if v is None or str(v).strip() == "":
            return "https"
        protocol = str(v).strip().lower().rstrip(":/")
        if protocol not in ("http", "https"):
            raise ValueError(f"Unsupported protocol: {v}")
        return protocol

    @field_validator("hostname", mode="before")
    @classmethod
    def parse_hostname(cls, v):
        if v is None:
            return ""
        return str(v).strip()


class ServerSettings(BaseSettings):
    """Listener, logging and upstream client settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
    )

    listen_host: str = Field(default="0.0.0.0", alias="LISTEN_HOST")
    listen_port: int = Field(default=5213, alias="LISTEN_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Trusted header carrying the client IP; empty means use the peer address
    client_ip_header: str = Field(default="", alias="CLIENT_IP_HEADER")
    region_header: str = Field(default="cf-ipcountry", alias="REGION_HEADER")

    connect_timeout: float = Field(default=5.0, alias="UPSTREAM_CONNECT_TIMEOUT")
    read_timeout: float = Field(default=30.0, alias="UPSTREAM_READ_TIMEOUT")

    config_file: Path = Field(default=DEFAULT_CONFIG_FILE, alias="PROXY_CONFIG_FILE")
    env_file: Path = Field(default=DEFAULT_ENV_FILE, alias="PROXY_ENV_FILE")

    @field_validator("config_file", "env_file", mode="before")
    @classmethod
    def parse_path(cls, v):
        if isinstance(v, str):
            return Path(v)
        return v


def load_proxy_settings(
    config_file: Optional[Path] = DEFAULT_CONFIG_FILE,
    env_file: Optional[Path] = DEFAULT_ENV_FILE,
) -> ProxySettings:
    """
    Load proxy settings the way the deployment expects them.

    When the JSON config file exists its keys win and the environment only
    fills the gaps. Otherwise the environment and the .env file are used.

    Raises:
        ValueError: If the config file is not valid JSON or a value is invalid
    """
    if config_file is not None and Path(config_file).is_file():
        with open(config_file, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Error parsing {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{config_file} must contain a JSON object")
        return ProxySettings(_env_file=None, **data)

    if env_file is not None and Path(env_file).is_file():
        return ProxySettings(_env_file=env_file, _env_file_encoding="utf-8")
    return ProxySettings(_env_file=None)


@lru_cache()
def get_settings() -> ServerSettings:
    """
    Get cached server settings instance.

    Proxy policy settings are not cached here: they are reloaded by the
    policy store whenever their sources change.

    Returns:
        ServerSettings: The server settings
    """
    return ServerSettings()
