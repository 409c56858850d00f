"""Shared pytest fixtures and utilities for gym-ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Set

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from gym_ledger import constants, core_logic, data_manager  # noqa: E402
from gym_ledger.constants import Collection  # noqa: E402
from gym_ledger.document_store import InMemoryDocumentStore  # noqa: E402
from gym_ledger.exceptions import StoreError, TransactionConflict  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)

PROTEIN_BAR_ID = "P-PROTEIN"
WATER_ID = "P-WATER"
MEMBER_ID = "U-MEMBER"

SEED_PRODUCTS: Dict[str, Dict[str, Any]] = {
    PROTEIN_BAR_ID: {
        "name": "Protein Bar",
        "price": 25,
        "stock": 10,
        "points": 5,
        "status": "active",
        "category": "supplements",
    },
    WATER_ID: {
        "name": "Water",
        "price": 2.5,
        "stock": 100,
        "points": 0,
        "status": "active",
    },
}

SEED_USERS: Dict[str, Dict[str, Any]] = {
    MEMBER_ID: {"name": "Ana Member", "email": "ana@example.com", "points": 0},
}

_CONFIG_TEMPLATE = (
    "[System]\n"
    "GymName = {gym_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Transactions]\n"
    "MaxAttempts = {max_attempts}\n\n"
    "[Reports]\n"
    "TopProductsLimit = {top_products}\n"
    "RecentTransactionsLimit = {recent}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    schema_version: str
    gym_name: str


class FixedClock:
    """Callable clock whose current moment can be moved by tests."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


class FlakyDocumentStore(InMemoryDocumentStore):
    """In-memory store whose commits fail while touching selected collections."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failing_collections: Set[str] = set()
        self.always_conflict = False

    async def _commit(self, tx) -> None:
        if self.always_conflict:
            raise TransactionConflict("forced conflict")
        touched = {key[0] for _, key, _ in tx.writes}
        if touched & self.failing_collections:
            raise StoreError(f"collections unavailable: {sorted(touched & self.failing_collections)}")
        await super()._commit(tx)


async def seed_store(store: InMemoryDocumentStore) -> InMemoryDocumentStore:
    """Load the default catalog and member into ``store``."""

    for product_id, data in SEED_PRODUCTS.items():
        await store.put(Collection.PRODUCTS, product_id, data)
    for user_id, data in SEED_USERS.items():
        await store.put(Collection.USERS, user_id, data)
    return store


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that writes config.ini bundles on demand."""

    def _create_config(
        *,
        gym_name: str = "Test Gym",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_attempts: int = 5,
        top_products: int = 10,
        recent: int = 20,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                gym_name=gym_name,
                schema_version=schema_version,
                max_attempts=max_attempts,
                top_products=top_products,
                recent=recent,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            schema_version=schema_version,
            gym_name=gym_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def settings() -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        gym_name="Test Gym",
        schema_version=DEFAULT_SCHEMA_VERSION,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Return an empty in-memory store; tests seed it with ``seed_store``."""

    return InMemoryDocumentStore()


@pytest.fixture
def runtime_context(
    settings: data_manager.ConfigSettings,
    store: InMemoryDocumentStore,
    clock: FixedClock,
) -> core_logic.RuntimeContext:
    """Wire the runtime context around the in-memory store and fixed clock."""

    return core_logic.build_runtime_context(settings, store, clock)
