"""Configuration document: schema, parsing and import."""

from disclaw.config.parser import ParsedConfig, flatten_server, load_config, parse_config
from disclaw.config.schema import ServerConfig

__all__ = ["ParsedConfig", "ServerConfig", "flatten_server", "load_config", "parse_config"]
