"""
Generation-time errors

Runtime failures of the native library are encoded into the generated
bindings; the classes here only describe failures of the generator itself.
"""

from typing import Optional


class BindgenError(Exception):
    """Base class for all generator errors"""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def __str__(self) -> str:
        if self.suggestion:
            return f'{self.message} ({self.suggestion})'
        return self.message


class ManifestError(BindgenError):
    """Malformed manifest or a type reference that resolves to nothing"""


class OutputError(BindgenError):
    """An output artifact could not be written"""


class ConfigError(BindgenError):
    """Invalid command line configuration"""
