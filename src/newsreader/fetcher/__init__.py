"""全文抓取模块."""

from newsreader.fetcher.extractor import FullTextExtractor, FullTextResult

__all__ = [
    "FullTextExtractor",
    "FullTextResult",
]
