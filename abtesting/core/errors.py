class ABTestingError(Exception):
    """Base class for errors raised by the experimentation engine."""


class InvalidConfiguration(ABTestingError):
    """Raised when a test definition cannot be created as given."""


class ABTestNotFound(ABTestingError):
    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(f"A/B test {test_id} not found.")


class InvalidStateTransition(ABTestingError):
    def __init__(self, test_id: str, current_status: str, action: str):
        self.test_id = test_id
        self.current_status = current_status
        self.action = action
        super().__init__(f"Cannot {action} test {test_id} in {current_status} status")


class InvalidEvent(ABTestingError):
    """Raised for events naming an unknown variant or event type."""
