"""Shared fixtures"""
import pytest

from metrics.descriptors import DescriptorRegistry
from scrapers.definitions import load_definitions
from scrapers.table import build_scrapers
from utils.database import ConnectionPool
from tests.fakes import FakeConnector


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def pool(connector):
    pool = ConnectionPool(connector, max_size=4, acquire_timeout=1.0, interrupt=connector.interrupt)
    yield pool
    pool.close()


@pytest.fixture
def default_scrapers():
    """Every scraper from the bundled definitions, keyed by name"""
    registry = DescriptorRegistry()
    scrapers = build_scrapers(load_definitions(), registry)
    return {scraper.name: scraper for scraper in scrapers}
