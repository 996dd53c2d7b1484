"""Exceptions raised by the root-sum-api service."""


class RootApiError(Exception):
    """Base exception for root-sum-api errors."""
    pass


class ConfigurationError(RootApiError):
    """Raised when startup configuration is invalid."""
    pass


class ParameterError(RootApiError):
    """Raised when a path parameter is not an integer."""

    def __init__(self, name: str, value: str):
        super().__init__(f"path parameter '{name}' is not an integer: {value!r}")
        self.name = name
        self.value = value


class RequestError(RootApiError):
    """Raised when an incoming HTTP request cannot be parsed."""
    pass
