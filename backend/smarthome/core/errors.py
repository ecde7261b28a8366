"""Error taxonomy shared by the store adapters, the reconciler and the router."""


class HomeStateError(Exception):
    """Base class for every error raised by the home state core."""


class ValidationError(HomeStateError):
    """A request was rejected before anything was persisted."""


class StoreUnavailable(HomeStateError):
    """The document store could not be reached; the caller may retry."""


class StoreTimeout(StoreUnavailable):
    """The transport to the document store timed out."""
