"""Doc Vector Search - semantic and hybrid retrieval over a live markdown corpus."""

__version__ = "0.3.0"
__build__ = "12"

from .core.exceptions import DocVectorSearchError
from .core.models import IndexStatus, SearchMode

__all__ = ["DocVectorSearchError", "IndexStatus", "SearchMode", "__version__", "__build__"]
