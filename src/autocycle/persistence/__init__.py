"""persistence/ — profile save/load adapters for the activity scheduler."""

from autocycle.persistence.store import (
    JsonProfileStore,
    NullProfileStore,
    ProfileState,
    ProfileStore,
    SqliteProfileStore,
    build_store,
)

__all__ = [
    "JsonProfileStore",
    "NullProfileStore",
    "ProfileState",
    "ProfileStore",
    "SqliteProfileStore",
    "build_store",
]
