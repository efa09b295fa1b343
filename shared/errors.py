from __future__ import annotations

from typing import Dict, List, Optional, Type


class QueueError(Exception):
    """Base class for errors that cross the wire as ``{message, code}``."""

    code = "QueueError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, str]:
        return {"message": self.message, "code": self.code}


class NotFound(QueueError):
    code = "NotFound"


class InvalidState(QueueError):
    code = "InvalidState"


class InvalidRequest(QueueError):
    code = "InvalidRequest"


class BackendError(QueueError):
    """The generation backend failed or could not be reached."""

    code = "BackendError"


class ProtocolError(QueueError):
    code = "ProtocolError"


class RequestTimeout(QueueError):
    code = "Timeout"


class Disconnected(QueueError):
    code = "Disconnected"


class RemoteError(QueueError):
    """Error envelope whose code has no local exception class."""

    code = "RemoteError"


ERROR_CLASSES: Dict[str, Type[QueueError]] = {
    cls.code: cls
    for cls in (
        NotFound,
        InvalidState,
        InvalidRequest,
        BackendError,
        ProtocolError,
        RequestTimeout,
        Disconnected,
        RemoteError,
    )
}


def error_from_payload(data: Optional[Dict[str, object]]) -> QueueError:
    """Rebuild the exception carried by an error envelope."""
    data = data if isinstance(data, dict) else {}
    message = str(data.get("message") or "Unknown error")
    cls = ERROR_CLASSES.get(str(data.get("code") or ""), RemoteError)
    return cls(message)


def _contains_any(message: str, needles: List[str]) -> bool:
    lowered = message.lower()
    return any(needle.lower() in lowered for needle in needles)


def classify_backend_error(msg: str) -> Dict[str, object]:
    """Classify backend error messages for UI-safe display + remediation guidance."""
    message = msg or ""
    if _contains_any(message, ["out of memory", "outofmemoryerror"]):
        return {
            "category": "oom",
            "short": "Backend ran out of GPU memory.",
            "action": [
                "Reduce resolution, steps, or batch size.",
                "Disable Hires.fix or lower the upscale factor and retry.",
            ],
        }
    if _contains_any(message, ["failed to set model", "model not found", "checkpoint not found"]):
        return {
            "category": "missing_model",
            "short": "Model checkpoint not available.",
            "action": [
                "Check the model name against the backend's model list.",
                "Refresh the backend's checkpoint list and retry.",
            ],
        }
    if _contains_any(message, ["connection refused", "connect error", "timed out", "not available"]):
        return {
            "category": "backend_unreachable",
            "short": "Generation backend is not reachable.",
            "action": ["Make sure the Web UI is running with the --api flag."],
        }
    return {
        "category": "unknown",
        "short": "Generation backend error.",
        "action": ["Check server logs for the full error details."],
    }
