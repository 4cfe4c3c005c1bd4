"""Domain-specific errors for gattsync."""


class GattsyncError(Exception):
    """Base error for gattsync."""


class SpecValidationError(GattsyncError):
    """Raised when a device spec file does not conform to schema or semantics."""


class SpecLoadError(GattsyncError):
    """Raised when reading a device spec file fails."""


class ConversionError(GattsyncError):
    """Raised when raw characteristic bytes cannot be converted to a value."""


class CharacteristicError(GattsyncError):
    """Raised when a characteristic cannot be processed for a property."""


class WriteTableError(CharacteristicError):
    """Raised when a property has no payload to write for its default value."""


class TransportError(GattsyncError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on scan or connect failures."""


class TransportSendError(TransportError):
    """Raised when a GATT operation on a connected peripheral fails."""


class TransportTimeoutError(TransportError):
    """Raised when a GATT operation times out."""
