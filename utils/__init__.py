"""Utils package for the dispatch system."""
from .logging_utils import (
    ContextFormatter,
    JsonFormatter,
    setup_logging,
    retry_with_backoff,
)

__all__ = [
    'ContextFormatter',
    'JsonFormatter',
    'setup_logging',
    'retry_with_backoff',
]
