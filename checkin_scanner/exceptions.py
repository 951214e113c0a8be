"""
Custom Exceptions for the Check-in Scanner

This module defines the error taxonomy used by the token codec, the
document stores and the attendance services. Validation failures are
raised here and converted to result values at the service boundary.
"""


class CheckinScannerException(Exception):
    """
    Base exception for the check-in scanner

    All custom exceptions in the system inherit from this class so that
    callers can catch one type at the edges.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize check-in scanner exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class FormatError(CheckinScannerException):
    """
    Raised when a scanned token does not follow the wire format

    Detected locally, never retried.
    """

    def __init__(self, token: str, detail: str):
        message = f"Malformed token {token!r}: {detail}"
        super().__init__(message, "FORMAT_ERROR")
        self.token = token
        self.detail = detail


class NotFoundError(CheckinScannerException):
    """Raised when a referenced document does not exist"""

    def __init__(self, collection: str, document_id: str):
        message = f"Document '{document_id}' not found in '{collection}'"
        super().__init__(message, "NOT_FOUND")
        self.collection = collection
        self.document_id = document_id


class ReplayError(CheckinScannerException):
    """Raised when a token is presented for a registration already attended"""

    def __init__(self, registration_id: str):
        message = f"Registration '{registration_id}' already scanned"
        super().__init__(message, "REPLAY")
        self.registration_id = registration_id


class MismatchError(CheckinScannerException):
    """Raised when a presented token disagrees with the stored one"""

    def __init__(self, registration_id: str):
        message = f"Token does not match registration '{registration_id}'"
        super().__init__(message, "TOKEN_MISMATCH")
        self.registration_id = registration_id


class StoreError(CheckinScannerException):
    """
    Raised when the document store fails

    Wraps transport or backend failures. Callers may retry; nothing in
    this package retries automatically.
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize store exception

        Args:
            operation: The store operation that failed (e.g. 'get', 'update')
            details: Detailed error information
        """
        message = f"Store error during {operation}: {details}"
        super().__init__(message, "STORE_ERROR")
        self.operation = operation
        self.details = details


class DataValidationException(CheckinScannerException):
    """
    Raised when input data fails validation

    Used for registration input (blank names, empty event ids, ...).
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize data validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error


class ConflictError(CheckinScannerException):
    """Raised when a conditional write finds the document already changed"""

    def __init__(self, collection: str, document_id: str, expected: dict):
        message = f"Document '{document_id}' in '{collection}' no longer matches {expected}"
        super().__init__(message, "CONFLICT")
        self.collection = collection
        self.document_id = document_id
        self.expected = expected
