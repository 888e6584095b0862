"""
Event envelopes exchanged on the probe and receiver listeners.

Envelopes follow the CloudEvents 1.0 HTTP binding. Both content modes are
understood:

- binary: attributes in ``ce-*`` headers, data in the body
- structured: the whole event as ``application/cloudevents+json``
"""
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, Mapping
from datetime import datetime, timezone
import re
import uuid
from urllib.parse import quote, unquote
import orjson

SPEC_VERSION = "1.0"
STRUCTURED_CONTENT_TYPE = "application/cloudevents+json"

_CORE_ATTRIBUTES = {"id", "source", "type", "specversion", "time", "subject", "datacontenttype", "dataschema"}
# Names longer than 20 characters are discouraged, not forbidden
_EXTENSION_NAME = re.compile(r"^[a-z0-9]+$")
# Binary mode: printable ASCII passes, except space, '"' and '%', which are percent-encoded
_HEADER_SAFE = "".join(chr(c) for c in range(0x21, 0x7F) if chr(c) not in '"%')


def _header_value(value: str) -> str:
    return quote(value, safe=_HEADER_SAFE)


def _extension_value(value: Any) -> str:
    # JSON booleans map to the canonical CloudEvents strings
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class EnvelopeError(ValueError):
    """Raised when an HTTP request does not carry a valid event envelope."""
    pass


class EventEnvelope(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str = Field(..., min_length=1, description="Event kind")
    source: str = Field(..., min_length=1, description="Origin identifier")
    specversion: str = SPEC_VERSION
    time: datetime | None = Field(default_factory=lambda: datetime.now(timezone.utc))
    subject: str | None = None
    datacontenttype: str | None = None
    data: Any = None
    extensions: Dict[str, str] = Field(default_factory=dict)

    @field_validator("extensions")
    @classmethod
    def _check_extension_names(cls, value: Dict[str, str]) -> Dict[str, str]:
        for name in value:
            if not _EXTENSION_NAME.match(name):
                raise ValueError(f"invalid extension name {name!r}")
        return value

    def extension(self, name: str, default: str | None = None) -> str | None:
        """Return an extension attribute, treating empty strings as missing."""
        value = self.extensions.get(name)
        return value if value else default

    def with_extension(self, name: str, value: str) -> "EventEnvelope":
        return self.model_copy(update={"extensions": {**self.extensions, name: value}})

    def to_binary(self) -> tuple[Dict[str, str], bytes]:
        """Encode as binary-mode headers and body."""
        headers = {
            "ce-specversion": self.specversion,
            "ce-id": self.id,
            "ce-type": self.type,
            "ce-source": self.source,
        }
        if self.time is not None:
            headers["ce-time"] = self.time.isoformat()
        if self.subject:
            headers["ce-subject"] = self.subject
        for name, value in self.extensions.items():
            headers[f"ce-{name}"] = value
        headers = {name: _header_value(value) for name, value in headers.items()}

        body = b""
        if self.data is not None:
            if isinstance(self.data, (bytes, bytearray)):
                body = bytes(self.data)
                headers["content-type"] = self.datacontenttype or "application/octet-stream"
            elif isinstance(self.data, str):
                body = self.data.encode()
                headers["content-type"] = self.datacontenttype or "text/plain"
            else:
                body = orjson.dumps(self.data)
                headers["content-type"] = self.datacontenttype or "application/json"
        return headers, body

    def to_structured(self) -> bytes:
        """Encode as a structured-mode JSON document."""
        doc = self.model_dump(exclude={"extensions"}, exclude_none=True, mode="json")
        doc.update(self.extensions)
        return orjson.dumps(doc)

    @classmethod
    def from_http(cls, headers: Mapping[str, str], body: bytes) -> "EventEnvelope":
        """
        Decode an envelope from an HTTP request.

        Args:
            headers: Request headers (case-insensitive mapping)
            body: Raw request body

        Returns:
            The decoded envelope

        Raises:
            EnvelopeError: If required attributes are missing or malformed
        """
        content_type = headers.get("content-type", "")
        try:
            if content_type.startswith(STRUCTURED_CONTENT_TYPE):
                return cls._from_structured(body)
            return cls._from_binary(headers, body, content_type)
        except EnvelopeError:
            raise
        except ValueError as e:
            # pydantic and orjson decode errors are both ValueErrors
            raise EnvelopeError(str(e)) from e

    @classmethod
    def _from_structured(cls, body: bytes) -> "EventEnvelope":
        doc = orjson.loads(body)
        if not isinstance(doc, dict):
            raise EnvelopeError("structured event must be a JSON object")
        attrs: Dict[str, Any] = {}
        extensions: Dict[str, str] = {}
        for name, value in doc.items():
            if name in _CORE_ATTRIBUTES or name == "data":
                attrs[name] = value
            elif name == "data_base64":
                continue
            else:
                extensions[name] = _extension_value(value)
        for required in ("id", "type", "source"):
            if not attrs.get(required):
                raise EnvelopeError(f"missing required attribute {required!r}")
        attrs.pop("dataschema", None)
        return cls(time=attrs.pop("time", None), **attrs, extensions=extensions)

    @classmethod
    def _from_binary(cls, headers: Mapping[str, str], body: bytes, content_type: str) -> "EventEnvelope":
        attrs: Dict[str, Any] = {}
        extensions: Dict[str, str] = {}
        for key, value in headers.items():
            key = key.lower()
            if not key.startswith("ce-"):
                continue
            name = key[3:]
            value = unquote(value)
            if name in _CORE_ATTRIBUTES:
                attrs[name] = value
            else:
                extensions[name] = value
        for required in ("id", "type", "source"):
            if not attrs.get(required):
                raise EnvelopeError(f"missing required attribute ce-{required}")
        attrs.pop("dataschema", None)
        attrs.pop("datacontenttype", None)

        data: Any = None
        if body:
            if content_type.startswith("application/json"):
                data = orjson.loads(body)
            elif content_type.startswith("text/"):
                data = body.decode()
            else:
                data = body
        return cls(
            time=attrs.pop("time", None),
            datacontenttype=content_type or None,
            data=data,
            extensions=extensions,
            **attrs,
        )
