from __future__ import annotations

import httpx

from schemas.entities import ErrorKind, StreamError


class ProviderError(Exception):
    """A provider failure tagged with the kind reported to the caller."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")

    def to_event(self) -> StreamError:
        return StreamError(kind=self.kind, message=self.message)

    @classmethod
    def from_status(cls, status: int, model: str, body: str = "") -> ProviderError:
        if status in (401, 403):
            return cls(ErrorKind.AUTHENTICATION_FAILED, "Authentication failed: invalid API key")
        if status == 404:
            return cls(ErrorKind.MODEL_NOT_FOUND, f"Model not found: {model}")
        detail = f"Status {status}"
        if body:
            detail = f"{detail}: {body[:200]}"
        return cls(ErrorKind.API_ERROR, detail)

    @classmethod
    def from_httpx(cls, exc: httpx.HTTPError) -> ProviderError:
        # ConnectTimeout is a TimeoutException, so check timeouts first.
        if isinstance(exc, httpx.TimeoutException):
            return cls(ErrorKind.TIMEOUT, "Request timeout")
        if isinstance(exc, (httpx.RemoteProtocolError, httpx.DecodingError)):
            return cls(ErrorKind.DECODE_ERROR, f"Malformed stream: {exc}")
        if isinstance(exc, httpx.TransportError):
            return cls(ErrorKind.CONNECTION_FAILED, f"Connection failed: {exc}")
        if isinstance(exc, httpx.HTTPStatusError):
            return cls.from_status(exc.response.status_code, model="")
        return cls(ErrorKind.API_ERROR, str(exc))
