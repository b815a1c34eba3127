"""Read-only query selectors."""

from attribution_kernel.selectors.base import BaseSelector
from attribution_kernel.selectors.review_queue_selector import (
    AllocationView,
    ReviewItem,
    ReviewQueueSelector,
)

__all__ = [
    "AllocationView",
    "BaseSelector",
    "ReviewItem",
    "ReviewQueueSelector",
]
