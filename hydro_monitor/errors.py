"""
Error types and the Result container used across the monitor.

Operations that talk to the broker or the time-series store return a
``Result`` instead of raising across layer boundaries.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class AppError(Exception):
    """Base class for all application errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{type(self).__name__}: {self.message}"


class MqttError(AppError):
    """MQTT connection or publish failure"""


class InfluxError(AppError):
    """InfluxDB request failure"""


class DataError(AppError):
    """Payload parsing or validation failure"""


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T = None

    @property
    def is_success(self) -> bool:
        return True

    @property
    def is_failure(self) -> bool:
        return False


@dataclass(frozen=True)
class Failure(Generic[T]):
    error: AppError

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_failure(self) -> bool:
        return True


Result = Union[Success[T], Failure[T]]
