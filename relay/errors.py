from __future__ import annotations

from typing import Any, Dict, List


class RelayError(Exception):
    """Base class for errors raised by the relay."""


class InvalidRequestError(RelayError):
    """A request body is missing a required field or has a malformed one."""


class ProviderAuthError(RelayError):
    """The provider rejected our credentials."""


class ProviderUnavailable(RelayError):
    """No usable provider connection; a job cannot be started."""


class DeliveryError(RelayError):
    """A subscriber channel refused a message."""


class DuplicateProjectError(RelayError):
    """A project id was registered twice."""


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def provider_error_text(error: Any) -> str:
    """Flatten the provider's error payload (string or {code, message} object) to text."""
    if error is None:
        return ""
    if isinstance(error, dict):
        message = error.get("message") or error.get("error") or ""
        code = error.get("code")
        if code is not None and message:
            return f"{message} (code {code})"
        return str(message or code or error)
    return str(error)


def classify_provider_error(msg: str) -> Dict[str, str]:
    """Classify a provider failure message for UI-safe display."""
    message = msg or ""
    if _contains_any(message, ["insufficient funds", "insufficient balance", "not enough tokens"]):
        return {"category": "insufficient_funds", "short": "Not enough render credits for this project."}
    if _contains_any(message, ["nsfw", "safe content filter", "content filter"]):
        return {"category": "content_filtered", "short": "The provider filtered this prompt."}
    if _contains_any(message, ["timeout", "timed out"]):
        return {"category": "timeout", "short": "The provider timed out rendering this project."}
    if _contains_any(message, ["cancelled", "canceled"]):
        return {"category": "cancelled", "short": "The project was cancelled."}
    return {"category": "unknown", "short": "Image generation failed."}
