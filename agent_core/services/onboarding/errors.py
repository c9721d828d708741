class OnboardingServiceError(Exception):
    """Raised when onboarding state cannot be read or written."""

    def __init__(self, message: str, thread_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.thread_id = thread_id
        self.recoverable = recoverable
