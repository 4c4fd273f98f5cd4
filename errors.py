from typing import Optional


class ExpensesError(Exception):
    """Root of every error raised by the recurring and budget engines."""

    message = "Unexpected error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)


class ValidationError(ExpensesError, ValueError):
    message = "Invalid input"


class InvalidAmount(ValidationError):
    message = "Please enter a valid amount greater than zero"


class InvalidThreshold(ValidationError):
    message = (
        "Alert threshold must be greater than zero and not exceed the budget amount"
    )


class InvalidDate(ValidationError):
    message = "Invalid date"


class InvalidFrequency(ValidationError):
    message = "Invalid frequency"


class InvalidCurrency(ValidationError):
    message = "Unknown currency"


class NoCurrencyAvailable(ValidationError):
    message = "No default currency is set"


class NotFound(ValidationError):
    message = "Not found"


class StateError(ExpensesError, RuntimeError):
    message = "Invalid state"


class BudgetExistsForCurrentMonth(StateError):
    message = "A budget for the current month already exists"


class OperationInProgress(StateError):
    message = "Another operation is in progress"


class ConversionError(ExpensesError, RuntimeError):
    message = "Currency conversion failed"


class RateUnavailable(ConversionError):
    message = "Exchange rate unavailable"


class PersistenceError(ExpensesError, RuntimeError):
    message = "Persistence failure"


class SaveFailed(PersistenceError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Failed to save changes: {cause}")
        self.cause = cause
