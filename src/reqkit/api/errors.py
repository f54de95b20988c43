class RequestError(Exception):
    """Base class for every failure of a JSON round trip."""


class ConstructionError(RequestError):
    """The outgoing request could not be built (bad url, header or body)."""


class TransportError(RequestError):
    """Sending the request or waiting for the response failed."""


class RequestTimeoutError(TransportError):
    """No response, or no complete body, within the configured timeout."""


class UnexpectedStatusError(RequestError):
    def __init__(self, status_code: int, url: str = ""):
        self.status_code = status_code
        self.url = url
        super().__init__(f"invalid response: status code {status_code}")


class DecodeError(RequestError):
    """The response body could not be read or decoded into the destination."""
