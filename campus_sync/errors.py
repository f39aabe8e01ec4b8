from __future__ import annotations


class CampusSyncError(Exception):
    pass


class CredentialsMissing(CampusSyncError):
    def __init__(self, message: str = "no credentials stored; log in first") -> None:
        super().__init__(message)


class InvalidCredentials(CampusSyncError):
    pass


class GatewayError(CampusSyncError):
    """Failure of a single remote call. Never escapes a refresh cycle."""


class NetworkError(GatewayError):
    pass


class HttpStatusError(GatewayError):
    def __init__(self, status_code: int, endpoint: str = "") -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(f"HTTP {status_code} from {endpoint or 'remote'}")


class DecodePayloadError(GatewayError):
    pass


class PreferenceReadError(CampusSyncError):
    pass


def describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
