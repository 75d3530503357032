"""Courier exception hierarchy.

Delivery failures are recorded on the delivery record as data and are never
raised. The exceptions below signal misuse of the engine or infrastructure
faults. All of them inherit from CourierError for easy catching.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from courier.engine.classifier import RawFailure
    from courier.models.delivery import ResponseSnapshot


class CourierError(Exception):
    """Base exception for all Courier errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a serializable dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class InvalidStateTransition(CourierError):
    """A state machine operation was called from a state that forbids it.

    Attributes:
        record_id: Delivery the operation was attempted on.
        current: Status the record was in.
        operation: Name of the rejected operation.
    """

    code: str = "invalid_state_transition"

    def __init__(self, record_id: str, current: str, operation: str) -> None:
        self.record_id = record_id
        self.current = str(getattr(current, "value", current))
        self.operation = operation
        super().__init__(f"Cannot {operation} delivery {record_id} in status {self.current}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a serializable dictionary."""
        return {
            "error": {
                "code": self.code,
                "record_id": self.record_id,
                "current": self.current,
                "operation": self.operation,
                "message": self.message,
            }
        }


class ValidationError(CourierError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a serializable dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CourierError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a serializable dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(CourierError):
    """Storage operation failed.

    Raised when the delivery store cannot read or write a record.
    """

    code: str = "storage_error"


class ConfigurationError(CourierError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"


class TransportError(CourierError):
    """A delivery attempt failed at the transport.

    Raised by transport implementations and always caught by the dispatcher,
    which feeds ``failure`` into the record's classifier.

    Attributes:
        failure: Raw failure signal describing what went wrong.
        response: Response snapshot, when the receiver answered.
    """

    code: str = "transport_error"

    def __init__(
        self,
        failure: RawFailure,
        response: ResponseSnapshot | None = None,
    ) -> None:
        self.failure = failure
        self.response = response
        super().__init__(failure.message or "Transport failure")
