import os
from typing import Optional

from aws_lambda_powertools import Logger
from pydantic import PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

import entities

DEFAULT_REDIS_ADDRESS = "redis://127.0.0.1/"
DEFAULT_LISTEN_ADDRESS = "0.0.0.0:3000"

_loggers: list[Logger] = []


def get_logger(service: Optional[str] = None, level: Optional[str] = None) -> Logger:
    kwargs = {
        "json_default": entities.json_default,
        "level": level or os.environ.get("LOG_LEVEL", "INFO"),
    }
    if service:
        kwargs["service"] = service
    logger = Logger(**kwargs)
    _loggers.append(logger)
    return logger


def set_log_level(level: str) -> None:
    """Apply `level` to every logger handed out by `get_logger`, including ones created later."""
    os.environ["LOG_LEVEL"] = level
    for logger in _loggers:
        logger.setLevel(level)


class SyncConfig(BaseSettings):
    """Settings of one `update-redis` run.

    Every field can be given through the environment (SERVER_ID, SLACK_BOT_TOKEN,
    REDIS_ADDRESS, ...) or a `.env` file; keyword arguments take precedence.
    """

    model_config = SettingsConfigDict(frozen=True, env_file=".env", extra="ignore")

    server_id: str
    slack_bot_token: str
    redis_address: str = DEFAULT_REDIS_ADDRESS
    ignore_lock: bool = False

    entity_ttl_seconds: PositiveInt = 12 * 60 * 60
    lock_lease_seconds: PositiveInt = 2 * 60

    users_requests_per_minute: PositiveInt = 10
    users_page_limit: PositiveInt = 200

    log_level: str = "INFO"

    @field_validator("server_id", "slack_bot_token")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:  # noqa: ANN102
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class WebConfig(BaseSettings):
    model_config = SettingsConfigDict(frozen=True, env_file=".env", extra="ignore")

    redis_address: str = DEFAULT_REDIS_ADDRESS
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    log_level: str = "INFO"

    @field_validator("listen_address")
    @classmethod
    def must_be_host_and_port(cls, v: str) -> str:  # noqa: ANN102
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"listen_address must look like host:port, got {v!r}")
        return v

    @property
    def host(self) -> str:
        return self.listen_address.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.listen_address.rpartition(":")[2])
