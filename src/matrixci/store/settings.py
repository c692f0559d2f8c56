from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class StoreSettings:
    database_url: str = "sqlite+aiosqlite:///./.matrixci/store.db"
    storage_dir: str = ".matrixci/store"

    @classmethod
    def from_env(cls) -> "StoreSettings":
        return cls(
            database_url=os.environ.get("MATRIXCI_STORE_DATABASE_URL", cls.database_url),
            storage_dir=os.environ.get("MATRIXCI_STORE_DIR", cls.storage_dir),
        )
