"""Key-value persistence backends for the two-factor state blob.

The store only ever needs ``load(key)`` and ``save(key, blob)``; each backend
rewrites the whole value on save.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from sqlalchemy.orm import sessionmaker

from twofactor.config.settings import Settings
from twofactor.db.session import build_engine, build_session_factory
from twofactor.models.schema import KeyValueEntry

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r'^[A-Za-z0-9_.-]+$')


class KeyValueStore(Protocol):
    def load(self, key: str) -> str | None: ...

    def save(self, key: str, blob: str) -> None: ...


class InMemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.lock = threading.Lock()
        self.values: dict[str, str] = dict(initial or {})

    def load(self, key: str) -> str | None:
        with self.lock:
            return self.values.get(key)

    def save(self, key: str, blob: str) -> None:
        with self.lock:
            self.values[key] = blob


class FileKeyValueStore:
    """One ``<key>.json`` file per key, replaced atomically on every save."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f'Unsupported storage key: {key!r}')
        return self.directory / f'{key}.json'

    def load(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding='utf-8')

    def save(self, key: str, blob: str) -> None:
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f'.{key}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as fh:
                fh.write(blob)
            os.replace(tmp, path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise


class SqlKeyValueStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> SqlKeyValueStore:
        return cls(build_session_factory(build_engine(database_url)))

    def load(self, key: str) -> str | None:
        with self.session_factory() as session:
            entry = session.get(KeyValueEntry, key)
            return entry.value if entry else None

    def save(self, key: str, blob: str) -> None:
        with self.session_factory.begin() as session:
            entry = session.get(KeyValueEntry, key)
            if entry is None:
                session.add(KeyValueEntry(key=key, value=blob))
            else:
                entry.value = blob


def build_key_value_store(settings: Settings) -> KeyValueStore:
    backend = settings.storage_backend.lower()
    logger.info('Using %s key-value backend', backend)
    if backend == 'memory':
        return InMemoryKeyValueStore()
    if backend == 'file':
        return FileKeyValueStore(settings.storage_dir)
    if backend == 'database':
        return SqlKeyValueStore.from_url(settings.database_url)
    raise ValueError(f'Unknown storage backend: {settings.storage_backend}')
