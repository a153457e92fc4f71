from __future__ import annotations


class ProxyApiError(Exception):
    kind = "error"

    def __init__(self, detail: str = "", status_code: int | None = None, kind: str | None = None) -> None:
        self.detail = detail
        self.status_code = status_code
        if kind is not None:
            self.kind = kind
        super().__init__(self.describe())

    def describe(self) -> str:
        if self.status_code is not None:
            return f"{self.kind} status={self.status_code} detail={self.detail}"
        return f"{self.kind} detail={self.detail}"


class TransportError(ProxyApiError):
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    MALFORMED = "malformed"

    kind = CONNECTION_REFUSED


class AuthError(ProxyApiError):
    kind = "unauthorized"


class NotFoundError(ProxyApiError):
    kind = "not_found"


class DaemonError(ProxyApiError):
    kind = "daemon_error"


class PolicyRejection(Exception):
    """Raised by the state machine when a command is not enabled for the current page/mode/preset."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"{command}: {reason}")


class ConfigError(Exception):
    pass


def user_message(exc: ProxyApiError) -> str:
    if isinstance(exc, AuthError):
        return "Unauthorized: check the API secret"
    if isinstance(exc, NotFoundError):
        return f"Not found: {exc.detail}" if exc.detail else "Not found"
    if isinstance(exc, TransportError):
        if exc.kind == TransportError.TIMEOUT:
            return "Daemon timed out"
        if exc.kind == TransportError.MALFORMED:
            return "Daemon sent a malformed response"
        return "Daemon unreachable"
    if exc.status_code is not None:
        return f"Daemon error {exc.status_code}: {exc.detail}" if exc.detail else f"Daemon error {exc.status_code}"
    return exc.detail or exc.kind
