"""内容寻址缓存与加载器。"""

from prompt_expert.cache.content_cache import CacheEntry, ContentCache, FetchFailure
from prompt_expert.cache.loaders import (
    ContentLoader,
    FetchedContent,
    FileSystemLoader,
    GitRevisionLoader,
    RoutingLoader,
)
from prompt_expert.cache.refs import ContentRef

__all__ = [
    "CacheEntry",
    "ContentCache",
    "ContentLoader",
    "ContentRef",
    "FetchFailure",
    "FetchedContent",
    "FileSystemLoader",
    "GitRevisionLoader",
    "RoutingLoader",
]
