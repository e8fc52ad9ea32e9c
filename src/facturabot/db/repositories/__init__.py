"""Repository layer for facturabot."""

from .base import BaseRepository
from .invoice import FolioGapRepository, InvoiceRepository

__all__ = [
    "BaseRepository",
    "FolioGapRepository",
    "InvoiceRepository",
]
