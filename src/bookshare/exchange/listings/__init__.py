"""Book listings.

Provides functionality for:
- Posting books as gifts, trades or loans
- Relisting and deleting listings (archiving goes through the Coordinator)
"""

from .manager import ListingManager
from .schemas import AgreedExchange, ListingCreate, ListingResponse

__all__ = [
    "ListingManager",
    "AgreedExchange",
    "ListingCreate",
    "ListingResponse",
]
