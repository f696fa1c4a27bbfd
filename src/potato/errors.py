class PotatoError(Exception):
    pass


class ConfigError(PotatoError):
    pass


class PreconditionError(PotatoError):
    """Raised before any invocation when an action is not allowed right now."""


class ExpiryError(PreconditionError):
    pass


class InvocationError(PotatoError):
    def __init__(self, message: str, partial: str = ""):
        super().__init__(message)
        self.partial = partial


class MalformedChunkError(PotatoError):
    pass


class BackendError(PotatoError):
    pass


class BackendUnavailableError(BackendError):
    pass
