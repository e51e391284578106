"""Custom exception classes for Session Relay."""


class RelayError(Exception):
    """Base exception for Session Relay errors."""

    status_code = 500

    def __init__(self, message: str, code: str = "internal", detail: str = ""):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(message)


class AuthenticationError(RelayError):
    """Missing or wrong API token."""

    status_code = 401

    def __init__(self, message: str = "unauthorized"):
        super().__init__(message, code="unauthorized")


class SessionError(RelayError):
    """Errors related to session management."""

    status_code = 400


class SessionNotFoundError(SessionError):
    """Session not found."""

    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", code="session_not_found")
        self.session_id = session_id


class SessionLimitError(SessionError):
    """Too many live sessions."""

    status_code = 503

    def __init__(self, limit: int):
        super().__init__(
            f"Session limit reached: {limit} concurrent sessions",
            code="session_limit",
        )


class InvalidTransitionError(SessionError):
    """Action not allowed in the session's current state."""

    status_code = 409

    def __init__(self, message: str, status: str = ""):
        super().__init__(message, code="invalid_transition", detail=status)


class ModeChangeError(SessionError):
    """Permission mode change rejected."""

    def __init__(self, message: str):
        super().__init__(message, code="mode_change_rejected")


class InvalidCwdError(RelayError):
    """Working directory filter or request cwd is not acceptable."""

    status_code = 400

    def __init__(self, message: str = "invalid cwd"):
        super().__init__(message, code="invalid_cwd")


class ProviderError(RelayError):
    """Errors raised while a provider run is in progress."""

    def __init__(self, message: str, code: str = "provider_error", detail: str = ""):
        super().__init__(message, code=code, detail=detail)


class ProviderNotFoundError(ProviderError):
    """Unknown provider id."""

    status_code = 400

    def __init__(self, provider_id: str):
        super().__init__(f"Unknown provider: {provider_id}", code="provider_not_found")


class HistoryNotFoundError(ProviderError):
    """No persisted transcript for the given session id."""

    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Session file not found", code="history_not_found", detail=session_id)
