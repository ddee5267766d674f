import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Union

MessageRole = Literal["user", "model"]
ContextRole = Literal["system", "user", "model"]
FileLifecycle = Literal["processing", "active", "failed"]


@dataclass
class FileRef:
    """Reference to a file uploaded to the backend's file store."""

    uri: str
    mime_type: str
    display_name: str = ""
    size_bytes: int = 0
    uploaded_at: float = 0.0
    lifecycle_state: FileLifecycle = "active"
    expires_at: float | None = None

    def is_usable(self, now: float | None = None) -> bool:
        """Active and not yet expired."""
        if self.lifecycle_state != "active" or not self.uri:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (time.time() if now is None else now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "mimeType": self.mime_type,
            "displayName": self.display_name,
            "sizeBytes": self.size_bytes,
            "uploadedAt": self.uploaded_at,
            "lifecycleState": self.lifecycle_state,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRef":
        return cls(
            uri=str(data.get("uri", "")),
            mime_type=str(data.get("mimeType", "application/octet-stream")),
            display_name=str(data.get("displayName", "")),
            size_bytes=int(data.get("sizeBytes", 0) or 0),
            uploaded_at=float(data.get("uploadedAt", 0) or 0),
            lifecycle_state=data.get("lifecycleState", "active"),
            expires_at=data.get("expiresAt"),
        )


@dataclass
class SessionContext:
    """Files, search results and URLs attached to a session."""

    files: List[FileRef] = field(default_factory=list)
    search_results: List[Dict[str, Any]] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)


@dataclass
class SessionState:
    """Per-session mutable record, read-modify-written as a whole."""

    session_id: str
    last_activity_at: float = field(default_factory=time.time)
    context: SessionContext = field(default_factory=SessionContext)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "lastActivityAt": self.last_activity_at,
            "context": {
                "files": [f.to_dict() for f in self.context.files],
                "searchResults": self.context.search_results,
                "urls": self.context.urls,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        ctx = data.get("context") or {}
        return cls(
            session_id=data["sessionId"],
            last_activity_at=float(data.get("lastActivityAt", 0) or 0),
            context=SessionContext(
                files=[FileRef.from_dict(f) for f in ctx.get("files", [])],
                search_results=list(ctx.get("searchResults", [])),
                urls=[str(u) for u in ctx.get("urls", [])],
            ),
        )


@dataclass
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ToolCallPart:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_call"] = "tool_call"


@dataclass
class ToolResultPart:
    name: str
    success: bool
    result: str
    type: Literal["tool_result"] = "tool_result"


Part = Union[TextPart, ToolCallPart, ToolResultPart]


def part_to_dict(part: Part) -> Dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ToolCallPart):
        return {"type": "tool_call", "name": part.name, "args": part.args}
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool_result",
            "name": part.name,
            "success": part.success,
            "result": part.result,
        }
    raise TypeError(f"Unsupported message part: {part!r}")


def part_from_dict(data: Dict[str, Any]) -> Part:
    """Decode a stored fragment. Untagged ``{"text": ...}`` is read as text."""
    kind = data.get("type", "text")
    if kind == "text":
        return TextPart(text=str(data.get("text", "")))
    if kind == "tool_call":
        return ToolCallPart(name=str(data["name"]), args=dict(data.get("args") or {}))
    if kind == "tool_result":
        return ToolResultPart(
            name=str(data["name"]),
            success=bool(data.get("success")),
            result=str(data.get("result", "")),
        )
    raise ValueError(f"Unknown message part type: {kind}")


@dataclass
class Message:
    """One entry of the message log, or of a prompt context when role is system."""

    role: ContextRole
    parts: List[Part]
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "parts": [part_to_dict(p) for p in self.parts],
            "timestamp": self.timestamp,
        }


@dataclass
class ToolCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    name: str
    success: bool
    result: str


@dataclass
class GenerateResult:
    """Outcome of a single backend call."""

    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    tokens_used: int | None = None
