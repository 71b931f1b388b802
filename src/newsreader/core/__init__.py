"""核心业务逻辑."""

from newsreader.core.content import ContentService
from newsreader.core.inoreader import InoreaderClient, InoreaderConfig
from newsreader.core.summary import SummaryService
from newsreader.core.sync import SyncInProgressError, SyncResult, SyncService

__all__ = [
    "ContentService",
    "InoreaderClient",
    "InoreaderConfig",
    "SummaryService",
    "SyncInProgressError",
    "SyncResult",
    "SyncService",
]
