"""Usage cache for repeat audits.

Per-file extraction results are keyed purely by the SHA-256 of the file
content, so an unchanged file is never re-parsed, whichever path it lives
at. There is no time-based expiry.

Cache Format: in memory, optionally backed by a SQLite database at
``<cache_dir>/usage.db`` when a cache directory is configured.
"""

import hashlib
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Optional

from .models import FileExtraction

logger = logging.getLogger(__name__)

CACHE_FILENAME = 'usage.db'


def fingerprint(content: bytes) -> str:
    """Content fingerprint used as the cache key."""
    return hashlib.sha256(content).hexdigest()


class UsageCache:
    """Fingerprint -> FileExtraction memo, safe to share between workers.

    Reads may run concurrently. Writes are serialized, and writing a
    fingerprint that is already stored is a no-op.
    """

    def __init__(self, cache_dir: Optional[Path] = None):
        """Initialize the cache.

        Args:
            cache_dir: Directory for the SQLite file; None keeps the cache in memory
        """
        self._entries: Dict[str, FileExtraction] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self.conn: Optional[sqlite3.Connection] = None
        self.cache_file: Optional[Path] = None

        if cache_dir is not None:
            cache_dir = Path(cache_dir)
            cache_dir.mkdir(parents=True, exist_ok=True)
            self.cache_file = cache_dir / CACHE_FILENAME
            self.conn = sqlite3.connect(str(self.cache_file), check_same_thread=False)
            self._init_database()

    def _init_database(self):
        """Create cache tables if they don't exist."""
        cursor = self.conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS file_extractions (
                fingerprint TEXT PRIMARY KEY,
                extraction_data TEXT NOT NULL
            )
        ''')
        self.conn.commit()

    @property
    def persistent(self) -> bool:
        return self.conn is not None

    def get(self, key: str) -> Optional[FileExtraction]:
        """Get the cached extraction for a fingerprint, or None."""
        entry = self._entries.get(key)
        if entry is not None:
            with self._lock:
                self._hits += 1
            return entry

        with self._lock:
            if self.conn is not None:
                cursor = self.conn.cursor()
                cursor.execute(
                    'SELECT extraction_data FROM file_extractions WHERE fingerprint = ?',
                    (key,),
                )
                result = cursor.fetchone()
                if result:
                    try:
                        entry = FileExtraction.from_dict(json.loads(result[0]))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        logger.debug("Discarding unreadable cache row %s", key)
                        entry = None
                if entry is not None:
                    self._entries[key] = entry
                    self._hits += 1
                    return entry
            self._misses += 1
        return None

    def put(self, key: str, extraction: FileExtraction):
        """Cache the extraction for a fingerprint."""
        with self._lock:
            if key in self._entries:
                return
            self._entries[key] = extraction
            if self.conn is not None:
                self.conn.execute(
                    'INSERT OR IGNORE INTO file_extractions (fingerprint, extraction_data) VALUES (?, ?)',
                    (key, json.dumps(extraction.to_dict(), sort_keys=True)),
                )
                self.conn.commit()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self):
        """Clear all cached data, in memory and on disk."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            if self.conn is not None:
                self.conn.execute('DELETE FROM file_extractions')
                self.conn.commit()

    def stats(self) -> Dict[str, int]:
        """Get cache statistics."""
        with self._lock:
            stored = len(self._entries)
            if self.conn is not None:
                cursor = self.conn.cursor()
                cursor.execute('SELECT COUNT(*) FROM file_extractions')
                stored = cursor.fetchone()[0]
            return {
                'entries': stored,
                'in_memory': len(self._entries),
                'hits': self._hits,
                'misses': self._misses,
                'persistent': int(self.persistent),
            }

    def close(self):
        """Close the database connection."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
