"""
Pydantic models for queue items, queue state and channel messages.

These models are the contract between the orchestrator, the storage
collaborator and the page agents. Everything that crosses the message bus
or is written to storage is one of these models, so malformed data fails
at the boundary with a ValidationError instead of deep inside a handler.
"""

import uuid
from datetime import datetime
from typing import Optional, Any, Dict, List, Literal, Iterable

from pydantic import BaseModel, Field, field_validator, model_validator, computed_field


MediaKind = Literal["video", "image"]

PromptStatus = Literal["pending", "processing", "completed", "failed", "editing"]

AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4", "21:9"]


def new_item_id() -> str:
    """Opaque unique id for a prompt item."""
    return uuid.uuid4().hex


# ===== Queue items =====

class PromptItem(BaseModel):
    """
    A single queued prompt submission.

    Lifecycle: pending -> processing -> completed | failed. The editing
    status is a transient lock held while a human edits the text; editing
    items are never picked by the queue.
    """

    id: str = Field(
        default_factory=new_item_id,
        description="Opaque unique id"
    )

    text: str = Field(
        ...,
        min_length=1,
        description="Prompt text submitted to the creation tool"
    )

    original_text: Optional[str] = Field(
        default=None,
        description="Text before the last edit or refinement"
    )

    created_at: datetime = Field(
        default_factory=datetime.now,
        description="When the item was created"
    )

    status: PromptStatus = Field(
        default="pending",
        description="Lifecycle status"
    )

    media_kind: MediaKind = Field(
        default="video",
        description="Target media kind"
    )

    aspect_ratio: Optional[AspectRatio] = Field(
        default=None,
        description="Presentation hint: aspect ratio"
    )

    variations: Optional[int] = Field(
        default=None,
        description="Presentation hint: variation count"
    )

    preset: Optional[str] = Field(
        default=None,
        description="Presentation hint: style preset"
    )

    enhanced: bool = Field(
        default=False,
        description="Generated with the enhanced technical specification"
    )

    start_time: Optional[datetime] = Field(
        default=None,
        description="When processing began (display only)"
    )

    completed_time: Optional[datetime] = Field(
        default=None,
        description="When processing ended (display only)"
    )

    duration_ms: Optional[int] = Field(
        default=None,
        ge=0,
        description="Processing duration in milliseconds (display only)"
    )

    error: Optional[str] = Field(
        default=None,
        description="Last failure message for failed items"
    )

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Reject whitespace-only prompts."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("Prompt text cannot be empty")
        return stripped

    @field_validator("variations")
    @classmethod
    def validate_variations(cls, v: Optional[int]) -> Optional[int]:
        """The creation tool only offers 2 or 4 variations."""
        if v is not None and v not in (2, 4):
            raise ValueError(f"variations must be 2 or 4, got {v}")
        return v


class QueueCounts(BaseModel):
    """Counters derived from the item collection by recount()."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    editing: int = 0

    @computed_field
    @property
    def processed(self) -> int:
        """Items that reached a terminal status."""
        return self.completed + self.failed


def recount(items: Iterable[PromptItem]) -> QueueCounts:
    """
    Recompute queue counters from the authoritative item collection.

    Pure function: the orchestrator calls it before every externally
    visible transition instead of incrementing cached counters.
    """
    counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "editing": 0}
    total = 0
    for item in items:
        total += 1
        counts[item.status] += 1
    return QueueCounts(total=total, **counts)


class QueueState(BaseModel):
    """
    Singleton record describing the orchestrator's run mode.

    processed_count and total_count are display counters; they are always
    rewritten from recount() and never trusted as a source of truth.
    """

    is_running: bool = False
    is_paused: bool = False
    current_prompt_id: Optional[str] = None
    processed_count: int = Field(default=0, ge=0)
    total_count: int = Field(default=0, ge=0)
    queue_start_time: Optional[datetime] = None
    last_error: Optional[str] = Field(
        default=None,
        description="Message of the last queue-halting error"
    )


class QueueConfig(BaseModel):
    """
    Persisted user configuration read by the orchestrator.

    Lives in storage next to the items; editable at runtime, unlike
    Settings which is fixed at startup.
    """

    context_prompt: str = ""
    batch_size: int = Field(default=50, ge=1, le=200)
    media_kind: MediaKind = "video"
    variation_count: int = 4
    use_enhanced: bool = True
    auto_generate_on_empty: bool = False
    auto_generate_on_received: bool = False
    min_delay_ms: int = Field(default=2000, ge=0)
    max_delay_ms: int = Field(default=5000, ge=0)
    setup_completed: bool = False

    @field_validator("variation_count")
    @classmethod
    def validate_variation_count(cls, v: int) -> int:
        if v not in (2, 4):
            raise ValueError(f"variation_count must be 2 or 4, got {v}")
        return v

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "QueueConfig":
        """Pacing bounds must describe a non-empty interval."""
        if self.max_delay_ms < self.min_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= min_delay_ms ({self.min_delay_ms})"
            )
        return self


# ===== Command results =====

class CommandResult(BaseModel):
    """
    Result of a UI-level command (start, pause, generate, ...).

    All host commands answer with this shape.
    """

    success: bool = Field(
        ...,
        description="Whether the command succeeded"
    )

    message: Optional[str] = Field(
        default=None,
        description="Human-readable result message"
    )

    error: Optional[str] = Field(
        default=None,
        description="Error message if success=False"
    )

    data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional result data"
    )


# ===== Channel messages =====

class AgentMessage(BaseModel):
    """
    Request travelling over the message bus in either direction.

    Host -> agent actions: ping, submit, check_limit, generation_complete,
    detect_settings, dom_snapshot.
    Agent -> host actions: start_network_monitoring, stop_network_monitoring,
    mark_complete, mark_failed.
    """

    action: Literal[
        "ping",
        "submit",
        "check_limit",
        "generation_complete",
        "detect_settings",
        "dom_snapshot",
        "start_network_monitoring",
        "stop_network_monitoring",
        "mark_complete",
        "mark_failed",
    ]

    page_id: Optional[int] = Field(
        default=None,
        description="Page instance the message concerns"
    )

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Action arguments"
    )

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: Dict[str, Any], info) -> Dict[str, Any]:
        """Check that each action carries the arguments its handler reads."""
        action = info.data.get("action")

        if action == "submit":
            if "item" not in v:
                raise ValueError("submit requires 'item' in payload")
        elif action == "mark_complete":
            if "item_id" not in v:
                raise ValueError("mark_complete requires 'item_id' in payload")
        elif action == "mark_failed":
            if "item_id" not in v or "error" not in v:
                raise ValueError("mark_failed requires 'item_id' and 'error' in payload")

        return v

    @model_validator(mode="after")
    def validate_page_id(self) -> "AgentMessage":
        if self.action in ("start_network_monitoring", "stop_network_monitoring") and self.page_id is None:
            raise ValueError(f"{self.action} requires page_id")
        return self


class AgentResponse(BaseModel):
    """Reply to an AgentMessage."""

    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "AgentResponse":
        return cls(success=True, data=data)

    @classmethod
    def from_exception(cls, exc: Exception) -> "AgentResponse":
        """Serialize an exception so the other side can rebuild it."""
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        error_code = getattr(exc, "error_code", None) or exc.__class__.__name__
        return cls(success=False, error=message, error_code=error_code)


class LimitCheckResult(BaseModel):
    """Outcome of probing the page for a rate-limit banner."""

    found: bool = False
    message: Optional[str] = None


class SubmitControl(BaseModel):
    """Submit-like control located by text/ARIA heuristics."""

    found: bool = False
    disabled: bool = False
    text: str = ""
    aria_label: str = ""


class DetectedSettings(BaseModel):
    """Generation settings currently selected on the host page."""

    media_kind: Optional[MediaKind] = None
    aspect_ratio: Optional[AspectRatio] = None
    variations: Optional[int] = None
    success: bool = True
    error: Optional[str] = None


# ===== Prompt generation =====

class GenerationRequest(BaseModel):
    """Request to the prompt generation collaborator."""

    context: str = Field(..., min_length=1)
    count: int = Field(default=10, ge=1, le=200)
    media_kind: MediaKind = "video"
    enhanced: bool = True


class GenerationResponse(BaseModel):
    """Either a list of prompt texts or an error."""

    success: bool
    prompts: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class EnhancementResponse(BaseModel):
    """Rewritten prompt; on failure `enhanced` is the original text."""

    success: bool
    enhanced: str
    error: Optional[str] = None
