"""
File-based storage of fetched page bodies, keyed by URL id.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import PageStoreError


class PageStore:
    """
    Persists each fetched page as ``<directory>/<url_id>/index.html``.

    A small ``meta.json`` next to the body records the source URL and the
    time it was stored.
    """

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
            'total_size_bytes': 0
        }

    async def initialize(self):
        """Create the storage directory."""
        try:
            self.data_directory.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Page storage initialized at {self.data_directory}")
        except OSError as e:
            raise PageStoreError(f"Failed to initialize page storage: {e}") from e

    def page_path(self, url_id: int) -> Path:
        return self.data_directory / str(url_id) / 'index.html'

    async def save(self, url_id: int, url: str, content: str) -> int:
        """
        Store a page body.

        Returns:
            Size of the stored body in bytes
        """
        file_path = self.page_path(url_id)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            data = content.encode('utf-8')
            file_path.write_bytes(data)

            meta = {
                'id': url_id,
                'url': url,
                'stored_at': datetime.now(timezone.utc).isoformat(),
                'size': len(data)
            }
            with open(file_path.parent / 'meta.json', 'w', encoding='utf-8') as f:
                json.dump(meta, f, ensure_ascii=False, indent=2)

        except OSError as e:
            self.stats['storage_errors'] += 1
            raise PageStoreError(f"Error storing page {url_id}: {e}") from e

        self.stats['total_stored'] += 1
        self.stats['total_size_bytes'] += len(data)
        self.logger.debug(f"Stored page {url_id} to {file_path}")
        return len(data)

    async def load(self, url_id: int) -> Optional[str]:
        """Stored body for ``url_id``, or None when nothing was stored."""
        file_path = self.page_path(url_id)
        if not file_path.exists():
            return None
        try:
            return file_path.read_bytes().decode('utf-8', errors='replace')
        except OSError as e:
            raise PageStoreError(f"Error reading page {url_id}: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
