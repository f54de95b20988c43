from datetime import timedelta
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_core import to_json
from requests.structures import CaseInsensitiveDict

from reqkit.api.errors import ConstructionError

JSON_CONTENT_TYPE = "application/json"


class _NoBody:
    def __repr__(self):
        return "NO_BODY"

    # pydantic deep-copies field defaults, the marker must stay a singleton
    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


# marks "no body given", None is a valid POST body (json null)
NO_BODY = _NoBody()


class RequestSpec(BaseModel):
    method: Literal["GET", "POST"]
    url: str = Field(..., min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = NO_BODY
    timeout: Optional[float] = None # seconds, None = no timeout

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator("headers", mode="before")
    @classmethod
    def _headers_or_empty(cls, value):
        return {} if value is None else dict(value)

    @field_validator("timeout", mode="before")
    @classmethod
    def _normalize_timeout(cls, value):
        if isinstance(value, timedelta):
            value = value.total_seconds()
        if value is not None and float(value) <= 0:
            return None
        return value

    @model_validator(mode="after")
    def _get_has_no_body(self):
        if self.method == "GET" and self.body is not NO_BODY:
            raise ValueError("GET requests carry no body")
        return self

    @property
    def has_body(self) -> bool:
        return self.method == "POST"

    def outgoing_headers(self) -> CaseInsensitiveDict:
        headers = CaseInsensitiveDict()
        if self.has_body:
            headers["Content-Type"] = JSON_CONTENT_TYPE

        # set, not append: caller headers replace the defaults
        for key, value in self.headers.items():
            headers[key] = value

        return headers

    def payload(self) -> Optional[bytes]:
        if not self.has_body:
            return None

        body = None if self.body is NO_BODY else self.body
        try:
            return to_json(body)
        except (TypeError, ValueError) as e:
            raise ConstructionError(f"failed to marshal request body: {e}") from e
