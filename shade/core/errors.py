"""Error taxonomy shared by the provider gateway and session persistence.

Every error carries a stable ``kind`` string and a ``user_message`` so the
overlay UI can render a human-readable explanation without inspecting the
exception type. Provider-facing errors wrap the vendor SDK exception in
``cause`` (and ``__cause__`` via ``raise ... from``) together with the
provider identifier that produced it.
"""


class ShadeError(Exception):
    """Base class for all gateway errors."""

    kind = "error"
    user_message = "Something went wrong."


class MissingApiKey(ShadeError):
    """A provider that requires a credential was used without one.

    Raised before any network call is attempted.
    """

    kind = "missing_api_key"

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"No API key configured for provider '{provider_id}'")

    @property
    def user_message(self) -> str:
        return f"Add an API key for {self.provider_id} in Settings to continue."


class UnknownProvider(ShadeError):
    """The provider id is neither in the registry nor backed by a built-in adapter."""

    kind = "unknown_provider"

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Unknown provider '{provider_id}'")

    @property
    def user_message(self) -> str:
        return f"The provider '{self.provider_id}' is not available."


class ProviderError(ShadeError):
    """A vendor API call failed.

    Attributes:
        provider_id: Identifier of the provider whose adapter raised
        cause: The underlying SDK or transport exception, if any
    """

    kind = "provider_error"

    def __init__(self, provider_id: str, cause: BaseException | None = None, message: str | None = None):
        self.provider_id = provider_id
        self.cause = cause
        if message is None:
            message = f"{provider_id} request failed"
            if cause is not None:
                message = f"{message}: {cause}"
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return f"{self.provider_id} returned an error. Please try again."


class Unauthenticated(ProviderError):
    """The provider rejected (or never received) the credential."""

    kind = "invalid_api_key"

    @property
    def user_message(self) -> str:
        return (
            f"{self.provider_id} rejected the API key. "
            "Open Settings and enter a valid key."
        )


InvalidApiKey = Unauthenticated


class UnsupportedModel(ProviderError):
    """The configured model does not exist or is not available to this key."""

    kind = "unsupported_model"

    @property
    def user_message(self) -> str:
        return f"The selected model is not available on {self.provider_id}."


class NetworkError(ProviderError):
    """Transport failure: connection refused, DNS, TLS or timeout."""

    kind = "network_error"

    @property
    def user_message(self) -> str:
        return f"Could not reach {self.provider_id}. Check your connection."


class RateLimited(ProviderError):
    """The provider throttled the request."""

    kind = "rate_limited"

    @property
    def user_message(self) -> str:
        return f"{self.provider_id} is rate limiting requests. Wait a moment and retry."


class StreamCancelled(ShadeError):
    """Terminal marker for a cancelled exchange. Not a failure."""

    kind = "cancelled"
    user_message = "Response stopped."


class PersistenceIOError(ShadeError):
    """Reading or writing a session record failed."""

    kind = "persistence_io_error"
    user_message = "Could not access saved sessions on disk."


class SessionNotFound(ShadeError):
    """No stored session has the requested id."""

    kind = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")

    @property
    def user_message(self) -> str:
        return "That session no longer exists."
