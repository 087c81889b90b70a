from results.sources.base import ExtractedPage, ResultSource
from results.sources.bbc import BBCResultSource

__all__ = [
    "ExtractedPage",
    "ResultSource",
    "BBCResultSource",
]
