from importlib.metadata import PackageNotFoundError, version

from mdfeedback.changes import build_change_index
from mdfeedback.diff import diff_texts
from mdfeedback.ingest import extract_markup_from_stream
from mdfeedback.markup import accept_all, export_markup, parse_markup, reject_all, serialize_markup
from mdfeedback.models import ChangeRecord, CommentThread, EngineConfig, SavedSession
from mdfeedback.redline.engine import EditResult, TrackChangesEngine
from mdfeedback.redline.store import SpanStore
from mdfeedback.session import ReviewSession

try:
    __version__ = version("markdown-feedback")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

__all__ = [
    "ReviewSession",
    "TrackChangesEngine",
    "EditResult",
    "SpanStore",
    "EngineConfig",
    "ChangeRecord",
    "CommentThread",
    "SavedSession",
    "parse_markup",
    "serialize_markup",
    "export_markup",
    "accept_all",
    "reject_all",
    "build_change_index",
    "diff_texts",
    "extract_markup_from_stream",
    "__version__",
]
