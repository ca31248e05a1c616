class JourneyEngineError(Exception):
    """Base class for errors surfaced to callers of the journey engine."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Set when the enrollment row was created before the failure.
        self.enrollment_id = None


class InvalidRequestError(JourneyEngineError):
    status_code = 400


class NotFoundError(JourneyEngineError):
    """A journey, step, enrollment or contact is missing or in the wrong state."""

    status_code = 404


class ConflictError(JourneyEngineError):
    """Duplicate active enrollment, or the enrollment is held by another run."""

    status_code = 409


class ExecutionError(JourneyEngineError):
    """A step handler raised while dispatching; the failure is already persisted."""

    status_code = 500

    def __init__(self, message: str, step_id: str = None, execution_id: str = None):
        super().__init__(message)
        self.step_id = step_id
        self.execution_id = execution_id
