"""
Error Handling Module

Typed exception hierarchy raised by the banking managers, and the
message-based classifiers that map any error to an HTTP-style status
code and a client-safe message.
"""

from dataclasses import dataclass
from typing import Optional


class BankingError(ValueError):
    """Base class for all business rule violations"""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BankingError):
    """Input failed validation"""
    status_code = 400


class InsufficientFundsError(ValidationError):
    """Balance too low for the requested operation"""


class UnauthorizedError(BankingError):
    """Caller is not authenticated or does not own the resource"""
    status_code = 401


class ForbiddenError(BankingError):
    """Caller is authenticated but not allowed to act"""
    status_code = 403


class NotFoundError(BankingError):
    """Requested entity does not exist"""
    status_code = 404


class ConflictError(BankingError):
    """Entity already exists or is in a conflicting state"""
    status_code = 409


@dataclass(frozen=True)
class ErrorResponse:
    """Status code and client-safe message for a failed operation"""
    status_code: int
    message: str

    def to_dict(self) -> dict:
        return {"statusCode": self.status_code, "message": self.message}


def _typed_response(error: Exception) -> Optional[ErrorResponse]:
    if isinstance(error, BankingError):
        return ErrorResponse(error.status_code, error.message)
    return None


def handle_account_operation_error(error: Exception) -> ErrorResponse:
    """Map an account/transfer error to a response"""
    typed = _typed_response(error)
    if typed:
        return typed

    message = str(error)

    if message == "Insufficient funds in source account":
        return ErrorResponse(400, message)

    if message in (
        "Source account not found",
        "Destination account not found",
        "Account not found",
        "Target account not found",
        "Recipient not found",
    ):
        return ErrorResponse(404, message)

    if "Unauthorized" in message:
        return ErrorResponse(401, message)

    if "Transfer amount must be positive" in message:
        return ErrorResponse(400, "Transfer amount must be positive")

    for fragment in (
        "cannot exceed",
        "inactive",
        "Account has balance",
        "Target account",
        "Recipient has no active account",
        "Currency mismatch",
        "Cannot transfer",
    ):
        if fragment in message:
            return ErrorResponse(400, message)

    return ErrorResponse(500, "An unexpected error occurred")


def handle_auth_error(error: Exception, operation: str = "operation") -> ErrorResponse:
    """Map a registration/login error to a response"""
    typed = _typed_response(error)
    if typed:
        return typed

    message = str(error)

    if message in (
        "User with this email already exists",
        "All fields are required",
        "Email is too long",
        "Password must be at least 8 characters",
    ):
        return ErrorResponse(400, message)

    if "must be between 2 and 100 characters" in message:
        return ErrorResponse(400, message)

    return ErrorResponse(500, f"An unexpected error occurred during {operation}")


def handle_generic_error(error: Exception, context: str) -> ErrorResponse:
    """Map any other error to a response using common message patterns"""
    typed = _typed_response(error)
    if typed:
        return typed

    message = str(error)

    if "not found" in message:
        return ErrorResponse(404, message)

    if "Unauthorized" in message or "unauthorized" in message:
        return ErrorResponse(401, message)

    if "required" in message or "invalid" in message or "must" in message:
        return ErrorResponse(400, message)

    return ErrorResponse(500, f"An unexpected error occurred during {context}")
