# tunnel_config.py
"""
Load client/server settings from a YAML file, with command line overrides.
"""
from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

import yaml


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

T = TypeVar("T")


@dataclass(frozen=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080
    public_key: Optional[str] = None
    public_key_reload_interval: int = 0  # minutes
    read_wait_time: float = 10.0
    connect_timeout: float = 10.0
    idle_timeout: float = 0.0
    max_buffer_size: int = 16777216
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.read_wait_time <= 0:
            raise ValueError("read_wait_time must be positive")
        if self.max_buffer_size <= 0:
            raise ValueError("max_buffer_size must be positive")
        if self.public_key_reload_interval < 0 or self.idle_timeout < 0:
            raise ValueError("intervals must not be negative")


@dataclass(frozen=True)
class ClientSettings:
    target: str
    tunnel: str
    port: int = 3000
    bind: str = "localhost"
    proxy: Optional[str] = None
    buffer_size: int = 1048576
    base64: bool = False
    private_key: Optional[str] = None
    public_key: Optional[str] = None
    single: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.target_address()

    def target_address(self) -> Tuple[str, int]:
        host, sep, port = self.target.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"target must be host:port, got {self.target!r}")
        return host.strip("[]"), int(port)


def _read_yaml(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    if not os.path.isfile(path):
        raise FileNotFoundError(f"config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"config file must hold a mapping: {path}")
    return {str(k).replace("-", "_"): v for k, v in raw.items()}


def _build(cls: Type[T], path: Optional[str], overrides: Optional[Dict[str, Any]]) -> T:
    known = {f.name for f in fields(cls)}
    values = _read_yaml(path)
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
    for k, v in (overrides or {}).items():
        if k in known and v is not None:
            values[k] = v
    return cls(**values)


def load_server_settings(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> ServerSettings:
    return _build(ServerSettings, path, overrides)


def load_client_settings(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> ClientSettings:
    try:
        return _build(ClientSettings, path, overrides)
    except TypeError as e:
        raise ValueError(f"incomplete client config: {e}") from e


def add_common_arguments(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--config", help="YAML settings file")
    ap.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
