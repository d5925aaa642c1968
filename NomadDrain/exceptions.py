class BaseError(RuntimeError):
    def get_message(self):
        return self.args[0]


class ConfigurationError(BaseError):
    pass


class EventParseError(BaseError):
    """ The triggering event cannot be used. No lifecycle action can be reported. """
    pass


class AuthError(BaseError):
    pass


class DrainError(BaseError):
    pass


class DeadlineExceeded(BaseError):
    pass


class LifecycleActionSpentError(BaseError):
    """ A lifecycle action token has already been used to report an outcome. """
    pass


class TransientError(BaseError):
    """ A request failed in a way that is worth retrying (connection, timeout, 5xx, 429). """
    pass


class RequestRejected(BaseError):

    def __init__(self, message, status: int):
        super().__init__(message)
        self.status = status


class InvalidResponseError(BaseError):
    pass
