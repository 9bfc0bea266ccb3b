"""Control protocol spoken between the app and the helper service.

Each connection carries exactly one request and one response, both encoded
as a single line of JSON terminated by ``\\n``.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# Upper bound for a single encoded message, used as the stream read limit
MAX_MESSAGE_BYTES = 1024 * 1024

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class ProtocolDecodeError(ValueError):
    """A line could not be decoded into a protocol message."""


class UnknownCommandError(ProtocolDecodeError):
    """The request named a command the receiver does not know."""

    def __init__(self, command: object) -> None:
        self.command = command
        super().__init__(f"Unknown command: {command!r}")


class Command(str, Enum):
    """Commands understood by the helper service."""

    PING = "ping"
    VERSION = "version"
    START = "start"
    STOP = "stop"
    STATUS = "status"
    LOGS = "logs"


class ErrorCode(IntEnum):
    """Numeric result codes carried in every response."""

    SUCCESS = 0
    UNKNOWN_ERROR = 1
    INVALID_COMMAND = 2
    INVALID_PARAMS = 3
    CORE_ALREADY_RUNNING = 4
    CORE_NOT_RUNNING = 5
    CORE_START_FAILED = 6
    CONFIG_NOT_FOUND = 7
    CORE_NOT_FOUND = 8
    PERMISSION_DENIED = 9


class SystemProxySettings(BaseModel):
    """HTTP system proxy the service should apply while the core runs."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=0, ge=0, le=65535)
    bypass_domains: list[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1", "*.local"]
    )


class StatusData(BaseModel):
    """Payload of a ``status`` response."""

    is_running: bool
    pid: int | None = None
    config_path: str | None = None
    start_time: datetime | None = None
    uptime_seconds: float | None = None
    last_exit_code: int | None = None
    error_reason: str | None = None


class VersionData(BaseModel):
    version: str
    build_date: str = ""


class LogsData(BaseModel):
    lines: list[str] = Field(default_factory=list)
    total_lines: int = 0


class StartData(BaseModel):
    pid: int


def _load_object(line: bytes | str) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolDecodeError(f"Malformed JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolDecodeError("Message must be a JSON object")
    return data


class Request(BaseModel):
    """A command plus its flat parameters."""

    model_config = ConfigDict(extra="ignore")

    command: Command
    config_path: str | None = None
    core_path: str | None = None
    auth_token: str | None = None
    system_proxy: SystemProxySettings | None = None

    def encode(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode() + b"\n"

    @classmethod
    def decode(cls, line: bytes | str) -> Request:
        """
        Decode one request line.

        Raises:
            UnknownCommandError: If the command tag is missing or unknown
            ProtocolDecodeError: If the line is not a valid request
        """
        data = _load_object(line)
        command = data.get("command")
        if not isinstance(command, str) or command not in {c.value for c in Command}:
            raise UnknownCommandError(command)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ProtocolDecodeError(str(e)) from e


class Response(BaseModel):
    """Outcome of a request: success flag, code, message and optional payload."""

    model_config = ConfigDict(extra="ignore")

    success: bool
    code: int = 0
    message: str = ""
    data: dict[str, Any] | None = None

    @classmethod
    def ok(cls, message: str = "OK", data: BaseModel | None = None) -> Response:
        return cls(
            success=True,
            code=int(ErrorCode.SUCCESS),
            message=message,
            data=data.model_dump(mode="json") if data is not None else None,
        )

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> Response:
        return cls(success=False, code=int(code), message=message)

    @property
    def error_code(self) -> ErrorCode:
        """Known code, or UNKNOWN_ERROR for codes this side does not define."""
        try:
            return ErrorCode(self.code)
        except ValueError:
            return ErrorCode.UNKNOWN_ERROR

    def payload(self, model: type[PayloadT]) -> PayloadT:
        """
        Parse ``data`` into a typed payload.

        Raises:
            ProtocolDecodeError: If data is missing or has the wrong shape
        """
        if self.data is None:
            raise ProtocolDecodeError("Response carries no data")
        try:
            return model.model_validate(self.data)
        except ValidationError as e:
            raise ProtocolDecodeError(str(e)) from e

    def encode(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode() + b"\n"

    @classmethod
    def decode(cls, line: bytes | str) -> Response:
        data = _load_object(line)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ProtocolDecodeError(str(e)) from e
