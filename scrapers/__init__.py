"""Table scrapers for NDB Cluster diagnostic schemas"""
from .base import Scraper, ScrapeContext
from .definitions import DefinitionFile, ScraperDefinition, load_definitions, parse_definitions
from .errors import ScrapeError, QueryError, DecodeError, ScrapeCancelled, DefinitionError
from .table import TableScraper, build_scrapers

__all__ = [
    'Scraper',
    'ScrapeContext',
    'DefinitionFile',
    'ScraperDefinition',
    'load_definitions',
    'parse_definitions',
    'ScrapeError',
    'QueryError',
    'DecodeError',
    'ScrapeCancelled',
    'DefinitionError',
    'TableScraper',
    'build_scrapers'
]
