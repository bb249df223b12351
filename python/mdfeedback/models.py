import datetime
import os
import secrets
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

_ID_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"


def new_id(size: int = 8) -> str:
    """Returns a short url-safe random identifier for spans, changes and comment threads."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(size))


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


class SpanStatus:
    """Status tags carried by the span variants."""

    ORIGINAL = "original"
    DELETED = "deleted"
    INSERTED = "inserted"
    HIGHLIGHTED = "highlighted"


class _SpanBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    text: str = Field(..., min_length=1)


class OriginalSpan(_SpanBase):
    """Text carried over unmodified from the imported document."""

    status: Literal["original"] = "original"


class DeletedSpan(_SpanBase):
    """
    Text the user deleted from the document.
    It stays in the document (rendered struck through) until accepted or reverted.
    """

    status: Literal["deleted"] = "deleted"
    paired_with: Optional[str] = None


class InsertedSpan(_SpanBase):
    """Text the user added. Remains editable by its author without further tracking."""

    status: Literal["inserted"] = "inserted"
    paired_with: Optional[str] = None


class HighlightSpan(_SpanBase):
    """Unchanged text marked read-only to anchor a comment thread."""

    status: Literal["highlighted"] = "highlighted"


Span = Annotated[
    Union[OriginalSpan, DeletedSpan, InsertedSpan, HighlightSpan],
    Field(discriminator="status"),
]


class Block(BaseModel):
    """A paragraph or heading holding an ordered run of spans."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["paragraph", "heading"] = "paragraph"
    level: int = 0
    spans: Tuple[Span, ...] = ()

    @property
    def text(self) -> str:
        return "".join(span.text for span in self.spans)

    @property
    def prefix(self) -> str:
        if self.kind == "heading":
            return "#" * max(1, self.level) + " "
        return ""


class CommentThread(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    text: str
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime.datetime] = None


class ChangeType:
    DELETION = "deletion"
    INSERTION = "insertion"
    SUBSTITUTION = "substitution"
    HIGHLIGHT = "highlight"


class ChangeRecord(BaseModel):
    """
    Read-only projection of one logical edit, recomputed from the span store.
    Never persisted.
    """

    type: Literal["deletion", "insertion", "substitution", "highlight"]
    id: str
    member_ids: List[str] = Field(default_factory=list)
    deleted_text: Optional[str] = None
    inserted_text: Optional[str] = None
    highlighted_text: Optional[str] = None
    comments: List[CommentThread] = Field(default_factory=list)
    context_before: str = ""
    context_after: str = ""
    start: int
    end: int


# --- Edit intents emitted by the editing substrate ---


class InsertIntent(BaseModel):
    kind: Literal["insert"] = "insert"
    position: int
    text: str


class DeleteIntent(BaseModel):
    """
    Collapsed (start == end) deletes remove one unit in `direction`.
    Non-collapsed deletes remove the selection [start, end).
    """

    kind: Literal["delete"] = "delete"
    start: int
    end: int
    direction: Literal["backward", "forward"] = "backward"


class ReplaceIntent(BaseModel):
    kind: Literal["replace"] = "replace"
    start: int
    end: int
    text: str


class PasteIntent(BaseModel):
    kind: Literal["paste"] = "paste"
    start: int
    end: int
    text: str


EditIntent = Annotated[
    Union[InsertIntent, DeleteIntent, ReplaceIntent, PasteIntent],
    Field(discriminator="kind"),
]


class EngineConfig(BaseModel):
    """Explicit configuration handed to the engine and the session."""

    model_config = ConfigDict(frozen=True)

    tracking_enabled: bool = Field(True, description="When False, edits are applied untracked.")
    context_words: int = Field(5, ge=0, description="Words of surrounding text shown per change.")
    history_limit: int = Field(200, ge=1, description="Maximum number of undo entries kept.")

    @classmethod
    def from_env(cls, prefix: str = "MDFEEDBACK_") -> "EngineConfig":
        values = {}
        tracking = os.getenv(f"{prefix}TRACKING")
        if tracking is not None:
            values["tracking_enabled"] = tracking.lower() in {"1", "true", "yes", "on"}
        context_words = os.getenv(f"{prefix}CONTEXT_WORDS")
        if context_words:
            values["context_words"] = int(context_words)
        history_limit = os.getenv(f"{prefix}HISTORY_LIMIT")
        if history_limit:
            values["history_limit"] = int(history_limit)
        return cls(**values)


class SavedSession(BaseModel):
    """Serialized session used to resume work. Comments travel inside the markup."""

    markup: str
    saved_at: datetime.datetime = Field(default_factory=utc_now)
