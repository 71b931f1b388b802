"""数据模型."""

from newsreader.models.article import Article
from newsreader.models.database import get_session, init_db
from newsreader.models.feed import Feed
from newsreader.models.folder import Folder
from newsreader.models.sync import SyncMetadata, SyncQueueEntry, SyncRun
from newsreader.models.tag import ArticleTag, Tag
from newsreader.models.usage import ApiUsage, FetchLog

__all__ = [
    "ApiUsage",
    "Article",
    "ArticleTag",
    "Feed",
    "FetchLog",
    "Folder",
    "SyncMetadata",
    "SyncQueueEntry",
    "SyncRun",
    "Tag",
    "get_session",
    "init_db",
]
