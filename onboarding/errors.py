"""Error types for the onboarding pipeline."""


class OnboardingError(Exception):
    code = "ONBOARDING_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable


class ValidationFailed(OnboardingError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, code: str = "INVALID_FORMAT", problems: list[str] | None = None) -> None:
        super().__init__(message, code=code, retryable=False)
        self.problems = problems or []


class DuplicateFarmer(OnboardingError):
    code = "DUPLICATE"

    def __init__(self, message: str, *, existing_farmer_id: str | None = None) -> None:
        super().__init__(message, retryable=False)
        self.existing_farmer_id = existing_farmer_id


class ServiceError(OnboardingError):
    """A dependency rejected the request; retrying will not help."""

    code = "SERVICE_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class TransientServiceError(ServiceError):
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code, retryable=True)


class StageOrderingError(OnboardingError):
    """A stage ran before the stage whose result it needs."""

    code = "MISSING_STAGE_RESULT"


class CircuitOpenError(OnboardingError):
    code = "CIRCUIT_OPEN"
    retryable = True

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"circuit breaker '{name}' is open; next trial in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class RecordParseError(OnboardingError):
    code = "PARSE_ERROR"


class OperationNotFound(OnboardingError):
    code = "NOT_FOUND"

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"bulk operation not found: {operation_id}")
        self.operation_id = operation_id


class InvalidOperationState(OnboardingError):
    code = "INVALID_STATE"


class BatchPersistenceError(OnboardingError):
    code = "PERSISTENCE_ERROR"
