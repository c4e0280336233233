"""
Import pipeline: staging, column review, matching, preview and commit.
"""

from .analysis import ColumnAnalysis, ColumnAnalyzer, FilterCounts, ValueEntry, ValueFilter, ValuePage, ValueSort
from .commit import CommitOrchestrator, CommitSummary
from .entities import EntityStore, WriteOutcome
from .matching import EntityMatcher, MatchResolver, MatchResult, MatchSummary, MatchType
from .preview import PreviewEngine, PreviewResult, PreviewRow
from .resolution import ResolvedRow, RowAction, RowResolver, decide_action
from .session_service import ImporterSettings, ImportSession, ImportSessionService, ImportStatus
from .staging import MappedColumn, StagedRow, StagingQuery, StagingStore
from .validation import ColumnFormat, ValidationCode, ValidationError, cast_value, validate_value

__all__ = [
    "ColumnAnalysis",
    "ColumnAnalyzer",
    "ColumnFormat",
    "CommitOrchestrator",
    "CommitSummary",
    "EntityMatcher",
    "EntityStore",
    "FilterCounts",
    "ImportSession",
    "ImportSessionService",
    "ImportStatus",
    "ImporterSettings",
    "MappedColumn",
    "MatchResolver",
    "MatchResult",
    "MatchSummary",
    "MatchType",
    "PreviewEngine",
    "PreviewResult",
    "PreviewRow",
    "ResolvedRow",
    "RowAction",
    "RowResolver",
    "StagedRow",
    "StagingQuery",
    "StagingStore",
    "ValidationCode",
    "ValidationError",
    "ValueEntry",
    "ValueFilter",
    "ValuePage",
    "ValueSort",
    "WriteOutcome",
    "cast_value",
    "decide_action",
    "validate_value",
]
