"""Input validation and sanitization for chat query payloads.

Payloads are parsed into pydantic models, so every field is checked and
all violations are collected in one pass. Free-text fields that are only
displayed or forwarded (system prompt, history) are truncated to their
limit; the primary ``query`` is rejected when it is too long.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

from queryproxy.app.exceptions import RequestValidationFailed
from queryproxy.app.services.model_catalog import MODEL_MAP

MAX_QUERY_LENGTH = 10000
MAX_SYSTEM_PROMPT_LENGTH = 2000
MAX_MODEL_ID_LENGTH = 100
MAX_MESSAGE_CONTENT_LENGTH = 50000
MAX_HISTORY_MESSAGES = 50
MAX_IMAGE_LENGTH = 10 * 1024 * 1024

# C0 control characters and DEL, keeping tab, newline and carriage return
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_DATA_URL_PREFIX = re.compile(r"^data:image/(jpeg|jpg|png|gif|webp);base64,", re.IGNORECASE)
_BASE64_BODY = re.compile(r"^[A-Za-z0-9+/=]+$")
_WHITESPACE = re.compile(r"\s")

MessageContent = Union[str, List[Dict[str, Any]]]


def _strip_controls(text: str) -> str:
    return _CONTROL_CHARS.sub("", text.strip())


def sanitize_string(text: Any, max_length: int) -> str:
    """Trim, drop control characters and truncate to ``max_length``.

    Non-string input sanitizes to the empty string.
    """
    if not isinstance(text, str):
        return ""
    return _strip_controls(text)[:max_length]


def _required_text(value: Any, label: str, max_length: int) -> str:
    """Non-empty string, truncated to ``max_length``."""
    if not isinstance(value, str):
        raise PydanticCustomError("string_type", f"{label} must be a string")
    cleaned = _strip_controls(value)
    if not cleaned:
        raise PydanticCustomError("string_empty", f"{label} cannot be empty")
    return cleaned[:max_length]


def _content_part(item: Any) -> Dict[str, Any]:
    if isinstance(item, dict):
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            text = _required_text(item["text"], "text content", MAX_MESSAGE_CONTENT_LENGTH)
            return {"type": "text", "text": text}

        image_url = item.get("image_url")
        if (
            item.get("type") == "image_url"
            and isinstance(image_url, dict)
            and isinstance(image_url.get("url"), str)
        ):
            url = _required_text(image_url["url"], "image URL", MAX_IMAGE_LENGTH)
            return {"type": "image_url", "image_url": {"url": url}}

    raise PydanticCustomError("content_item", "has invalid content item")


class HistoryMessage(BaseModel):
    """One prior conversation turn: text, or text and image parts."""
    role: Literal["user", "assistant", "system"]
    content: MessageContent

    @field_validator("content", mode="before")
    @classmethod
    def clean_content(cls, value: Any) -> MessageContent:
        if isinstance(value, str):
            return _required_text(value, "message content", MAX_MESSAGE_CONTENT_LENGTH)
        if isinstance(value, list):
            return [_content_part(item) for item in value]
        raise PydanticCustomError("content_type", "has invalid content type")


class ValidatedQuery(BaseModel):
    """A chat query that passed validation, with every field sanitized.

    Optional fields sent as JSON null are treated as absent. The model
    allow-list comes from the validation context (``allowed_models``).
    """
    model_config = ConfigDict(extra="forbid")

    query: str
    model: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    conversation_history: List[HistoryMessage] = Field(
        default_factory=list,
        alias="conversationHistory",
        max_length=MAX_HISTORY_MESSAGES,
    )
    image: Optional[str] = None

    @field_validator("query", mode="before")
    @classmethod
    def check_query(cls, value: Any) -> str:
        if value is None:
            raise PydanticCustomError("missing", "query is required")
        cleaned = _required_text(value, "query", MAX_QUERY_LENGTH + 1)
        if len(cleaned) > MAX_QUERY_LENGTH:
            raise PydanticCustomError(
                "string_too_long",
                f"query exceeds maximum length of {MAX_QUERY_LENGTH} characters",
            )
        return cleaned

    @field_validator("model", mode="before")
    @classmethod
    def check_model(cls, value: Any, info: ValidationInfo) -> Optional[str]:
        """Allow-list membership only; no fuzzy matching."""
        if value is None:
            return None
        if not isinstance(value, str):
            raise PydanticCustomError("string_type", "Model ID must be a string")

        allowed = (info.context or {}).get("allowed_models", MODEL_MAP.keys())
        sanitized = sanitize_string(value, MAX_MODEL_ID_LENGTH)
        if sanitized not in allowed:
            raise PydanticCustomError(
                "invalid_model", "Invalid model ID: {model}", {"model": sanitized}
            )
        return sanitized

    @field_validator("system_prompt", mode="before")
    @classmethod
    def truncate_system_prompt(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise PydanticCustomError("string_type", "systemPrompt must be a string")
        return sanitize_string(value, MAX_SYSTEM_PROMPT_LENGTH) or None

    @field_validator("conversation_history", mode="before")
    @classmethod
    def check_history(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            raise PydanticCustomError("list_type", "Conversation history must be an array")
        return value

    @field_validator("image", mode="before")
    @classmethod
    def check_image(cls, value: Any) -> Optional[str]:
        """Accept a data:image/...;base64, URL or raw base64; bytes are not decoded."""
        if value is None:
            return None
        if not isinstance(value, str):
            raise PydanticCustomError("string_type", "Image must be a string (base64 encoded)")

        is_data_url = bool(_DATA_URL_PREFIX.match(value))
        is_base64 = bool(_BASE64_BODY.match(_WHITESPACE.sub("", value)))
        if not is_data_url and not is_base64:
            raise PydanticCustomError("image_format", "Image must be a valid base64 encoded image")

        if len(value) > MAX_IMAGE_LENGTH:
            raise PydanticCustomError(
                "image_too_large",
                f"Image exceeds maximum size of {MAX_IMAGE_LENGTH // 1024 // 1024}MB",
            )
        return value


def _history_message(index: Any, error: Dict[str, Any]) -> str:
    kind = error["type"]
    if kind == "literal_error":
        return f"Message {index} has invalid role: {error['input']}"
    if kind in ("content_item", "content_type"):
        return f"Message {index} {error['msg']}"
    if kind in ("string_type", "string_empty") and error["loc"][2:] == ("content",):
        return f"Message {index} content: {error['msg']}"
    return f"Message {index} is invalid"


def describe_errors(exc: ValidationError) -> List[str]:
    """Flatten pydantic errors into one message per violation.

    Unexpected keys are reported together, after the field errors.
    """
    messages: List[str] = []
    unexpected: List[str] = []

    for error in exc.errors():
        loc = error["loc"]
        kind = error["type"]

        if kind == "extra_forbidden":
            unexpected.append(str(loc[-1]))
        elif not loc:
            messages.append("Request body must be a JSON object")
        elif loc[0] == "conversationHistory" and len(loc) > 1:
            messages.append(_history_message(loc[1], error))
        elif kind == "too_long" and loc[0] == "conversationHistory":
            messages.append(
                f"Conversation history cannot exceed {MAX_HISTORY_MESSAGES} messages"
            )
        elif kind == "missing":
            messages.append(f"{loc[0]} is required")
        else:
            messages.append(error["msg"])

    if unexpected:
        messages.append(f"Unexpected fields: {', '.join(unexpected)}")

    # A single bad message can fail several checks at once
    return list(dict.fromkeys(messages))


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    value: Optional[ValidatedQuery] = None

    def unwrap(self) -> ValidatedQuery:
        """Return the validated query or raise with every collected error."""
        if not self.valid or self.value is None:
            raise RequestValidationFailed(self.errors)
        return self.value


def validate_query_request(payload: Any, allowed_models: Set[str]) -> ValidationResult:
    """Validate a chat query payload against the schema and model allow-list."""
    try:
        query = ValidatedQuery.model_validate(
            payload, context={"allowed_models": allowed_models}
        )
    except ValidationError as e:
        return ValidationResult(valid=False, errors=describe_errors(e))
    return ValidationResult(valid=True, value=query)
