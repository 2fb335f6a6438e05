"""Scraper error taxonomy"""
from typing import Optional
from metrics.descriptors import DescriptorConflictError, UnregisteredDescriptorError
from metrics.models import LabelCardinalityError


class ScrapeError(Exception):
    """A scraper could not contribute samples for this cycle"""

    def __init__(self, message: str, scraper: Optional[str] = None):
        super().__init__(message)
        self.scraper = scraper

    def __str__(self) -> str:
        message = super().__str__()
        if self.scraper:
            return f"{self.scraper}: {message}"
        return message


class QueryError(ScrapeError):
    """The diagnostic query failed (missing table, lost connection, pool exhausted)"""


class DecodeError(ScrapeError):
    """A row did not match the declared shape or value types"""


class ScrapeCancelled(ScrapeError):
    """The cycle deadline passed or the cycle was cancelled"""


class DefinitionError(ValueError):
    """A scraper declaration is invalid"""


__all__ = [
    "ScrapeError",
    "QueryError",
    "DecodeError",
    "ScrapeCancelled",
    "DefinitionError",
    "LabelCardinalityError",
    "DescriptorConflictError",
    "UnregisteredDescriptorError",
]
