import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from urllib.parse import parse_qsl


@dataclass(frozen=True)
class ParsedBody:
    fields: dict[str, Any] = field(default_factory=dict)

    def text(self, name: str) -> Optional[str]:
        """A non-empty string field, or None."""
        value = self.fields.get(name)
        if isinstance(value, str) and value:
            return value
        return None


@dataclass(frozen=True)
class MalformedBody:
    reason: str


BodyResult = Union[ParsedBody, MalformedBody]


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def _decode_json(raw: bytes) -> BodyResult:
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return MalformedBody("Request body is not valid JSON")
    if not isinstance(data, dict):
        return MalformedBody("Request body must be a JSON object")
    return ParsedBody(data)


def negotiate_body(content_type: Optional[str], raw: bytes) -> BodyResult:
    """
    Parse a request body according to its content type.

    JSON and form-url-encoded bodies are decoded by type; anything else is
    tried as JSON. An empty body is an empty `ParsedBody`, an undecodable
    one a `MalformedBody`.
    """
    if not raw.strip():
        return ParsedBody()

    media_type = _media_type(content_type)
    if media_type == "application/x-www-form-urlencoded":
        try:
            return ParsedBody(dict(parse_qsl(raw.decode("utf-8"), keep_blank_values=True)))
        except UnicodeDecodeError:
            return MalformedBody("Form body is not valid UTF-8")

    return _decode_json(raw)
