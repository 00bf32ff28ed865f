"""File-backed provider for local runs and demos.

Each object is stored as {root}/{type}/{id}.json. Useful to exercise
plan/apply end to end without a real cloud account.
"""

import json
import logging
import secrets
import threading
from pathlib import Path
from typing import Optional

from errors import ProviderError

logger = logging.getLogger(__name__)


class LocalProvider:
    """Stores resources as JSON documents under a root directory."""

    def __init__(self, root):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, resource_type: str, object_id: str) -> Path:
        if not object_id or '/' in object_id or object_id.startswith('.'):
            raise ProviderError(f"Invalid object id '{object_id}'")
        return self.root / resource_type / f'{object_id}.json'

    def _write(self, path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp.replace(path)

    def create(self, resource_type: str, attributes: dict) -> dict:
        object_id = f'{resource_type}-{secrets.token_hex(4)}'
        outputs = {**attributes, 'id': object_id}
        with self._lock:
            self._write(self._path(resource_type, object_id), outputs)
        logger.debug(f"[local] Created {resource_type} {object_id}")
        return outputs

    def read(self, resource_type: str, outputs: dict) -> Optional[dict]:
        path = self._path(resource_type, outputs.get('id', ''))
        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, encoding='utf-8') as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ProviderError(f"Cannot read {path}: {e}", transient=True)

    def update(self, resource_type: str, outputs: dict, attributes: dict) -> dict:
        object_id = outputs.get('id', '')
        path = self._path(resource_type, object_id)
        new_outputs = {**attributes, 'id': object_id}
        with self._lock:
            if not path.exists():
                raise ProviderError(f"{resource_type} {object_id} does not exist", status=404)
            self._write(path, new_outputs)
        logger.debug(f"[local] Updated {resource_type} {object_id}")
        return new_outputs

    def delete(self, resource_type: str, outputs: dict) -> None:
        path = self._path(resource_type, outputs.get('id', ''))
        with self._lock:
            path.unlink(missing_ok=True)
        logger.debug(f"[local] Deleted {resource_type} {outputs.get('id')}")
