"""
Shared fixtures for the sdnscore test suite
"""

import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from ingestor import entry_id_for
from normalization import normalize_text
from store import InMemoryStore
from watchlist import EntryCategory, WatchlistEntry, WatchlistSnapshot


LIST_DATE = date(2024, 3, 1)


@pytest.fixture(autouse=True)
def reset_config():
    """Never let one test's configuration leak into another"""
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


@pytest.fixture
def config(tmp_path):
    """Configuration with all defaults (no config.yaml on disk)"""
    return ConfigManager(str(tmp_path / "absent.yaml"))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def list_date():
    return LIST_DATE


def build_entry(
    name: str,
    city: Optional[str] = None,
    country: Optional[str] = None,
    street: Optional[str] = None,
    alt_names: Sequence[str] = (),
    category: EntryCategory = EntryCategory.INDIVIDUAL
) -> WatchlistEntry:
    key = (
        normalize_text(name),
        category.value,
        normalize_text(street),
        normalize_text(city),
        normalize_text(country),
    )
    return WatchlistEntry(
        entry_id=entry_id_for(key),
        primary_name=name,
        category=category,
        alt_names=tuple(alt_names),
        street=street,
        city=city,
        country=country,
        normalized_primary_name=key[0],
        normalized_alt_names=tuple(normalize_text(a) for a in alt_names),
        normalized_street=key[2],
        normalized_city=key[3],
        normalized_country=key[4],
    )


def build_snapshot(entries: Sequence[WatchlistEntry], list_date: date = LIST_DATE) -> WatchlistSnapshot:
    return WatchlistSnapshot(
        snapshot_id=str(uuid.uuid4()),
        list_date=list_date,
        name=f"test-{list_date.isoformat()}",
        entries=tuple(entries),
        source_checksum=uuid.uuid4().hex,
        ingested_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def entry_factory():
    return build_entry


@pytest.fixture
def snapshot_factory():
    return build_snapshot


@pytest.fixture
def caracas_snapshot():
    """Small snapshot used by matching and scoring tests"""
    return build_snapshot([
        build_entry("Juan Pérez", city="Caracas", country="VE"),
        build_entry("Acme Trading LLC", country="IR", category=EntryCategory.ENTITY),
        build_entry("Viktor Petrov", alt_names=["Victor Petroff"]),
    ])
