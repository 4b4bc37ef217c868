"""JSON-file shared store for command-line use.

All keys live in a single JSON document. The document is re-read before
every access and rewritten after every write, so short-lived processes (one
per CLI invocation) agree on session state. Change notifications reach only
subscribers in the writing process.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

from ..errors import StoreError
from .memory import InMemorySharedStore

logger = logging.getLogger(__name__)


class FileSharedStore(InMemorySharedStore):
    """Shared store persisted to a JSON file."""

    def __init__(self, path: Union[str, Path] = "./data/store.json", delivery_delay: float = 0.0):
        """Initialize file store.

        Args:
            path: JSON document holding every key
            delivery_delay: Seconds to wait before delivering each change
        """
        super().__init__(delivery_delay=delivery_delay)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._loaded_signature: Optional[tuple] = None
        logger.debug(f"FileSharedStore initialized with path={self.path}")

    def _signature(self) -> tuple:
        stat = self.path.stat()
        return (stat.st_mtime_ns, stat.st_size)

    async def _sync_in(self) -> None:
        try:
            signature = self._signature()
        except FileNotFoundError:
            return
        if signature == self._loaded_signature:
            return

        try:
            async with aiofiles.open(self.path, 'r') as f:
                content = await f.read()
        except OSError as e:
            raise StoreError(f"Failed to read {self.path}: {e}")

        try:
            document: Dict[str, Any] = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt store file {self.path}: {e}")
            document = {}

        self._data = {key: json.dumps(value) for key, value in document.items()}
        self._loaded_signature = signature

    async def _sync_out(self) -> None:
        document = {key: json.loads(raw) for key, raw in self._data.items()}
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            async with aiofiles.open(tmp_path, 'w') as f:
                await f.write(json.dumps(document, indent=2))
            os.replace(tmp_path, self.path)
            self._loaded_signature = self._signature()
        except OSError as e:
            # Next access re-reads whatever actually reached the disk
            self._loaded_signature = None
            raise StoreError(f"Failed to write {self.path}: {e}")

    async def health_check(self) -> Dict[str, Any]:
        health = await super().health_check()
        health.update({
            'backend': 'file',
            'path': str(self.path),
            'exists': self.path.exists(),
        })
        return health
