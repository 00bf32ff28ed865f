"""State persistence for resource orchestration.

Tracks the last-applied attributes and provider outputs of every managed
resource and persists them to a JSON file so later plans can diff against
them and destroys can locate resources.

Concurrent mutation is prevented with an exclusive lock file next to the
state file ({state}.lock).
"""

import getpass
import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from errors import LockHeldError, StateError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass
class ResourceState:
    """Last-applied state of one resource.

    Attributes:
        id: Resource id (<type>.<name>)
        type: Resource type
        attributes: Declared attributes as applied (references resolved)
        outputs: Attributes reported by the provider, including computed ones
        depends_on: Resource ids this resource depended on when applied
        prevent_destroy: Lifecycle flag recorded at apply time
        updated_at: Timestamp of the last successful apply
    """
    id: str
    type: str
    attributes: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    prevent_destroy: bool = False
    updated_at: Optional[float] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'type': self.type,
            'attributes': self.attributes,
            'outputs': self.outputs,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.prevent_destroy:
            d['prevent_destroy'] = True
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, resource_id: str, data: dict) -> 'ResourceState':
        return cls(
            id=resource_id,
            type=data.get('type', resource_id.split('.', 1)[0]),
            attributes=dict(data.get('attributes') or {}),
            outputs=dict(data.get('outputs') or {}),
            depends_on=list(data.get('depends_on') or []),
            prevent_destroy=bool(data.get('prevent_destroy', False)),
            updated_at=data.get('updated_at'),
        )


class State:
    """Mapping of resource id to last-applied state, with version metadata.

    serial increases by one on every save; lineage identifies the state's
    history and never changes once created.
    """

    def __init__(self, lineage: Optional[str] = None, serial: int = 0):
        self.lineage = lineage or str(uuid.uuid4())
        self.serial = serial
        self._resources: dict[str, ResourceState] = {}

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    def get(self, resource_id: str) -> Optional[ResourceState]:
        return self._resources.get(resource_id)

    def put(self, resource: ResourceState) -> None:
        self._resources[resource.id] = resource

    def remove(self, resource_id: str) -> Optional[ResourceState]:
        return self._resources.pop(resource_id, None)

    def ids(self) -> list[str]:
        return sorted(self._resources)

    def dependency_map(self) -> dict[str, set[str]]:
        """Recorded dependencies, restricted to resources still in state."""
        return {
            rid: {d for d in rs.depends_on if d in self._resources}
            for rid, rs in self._resources.items()
        }

    def to_dict(self) -> dict:
        return {
            'format_version': STATE_FORMAT_VERSION,
            'lineage': self.lineage,
            'serial': self.serial,
            'resources': {rid: self._resources[rid].to_dict() for rid in self.ids()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'State':
        version = data.get('format_version')
        if version != STATE_FORMAT_VERSION:
            raise StateError(
                f"Unsupported state format version: {version}. "
                f"Supported version: {STATE_FORMAT_VERSION}"
            )
        state = cls(lineage=data.get('lineage'), serial=int(data.get('serial', 0)))
        for rid, resource_data in (data.get('resources') or {}).items():
            state.put(ResourceState.from_dict(rid, resource_data))
        return state


@dataclass
class LockInfo:
    """Contents of the state lock file."""
    id: str
    operation: str
    who: str
    created: float

    @property
    def created_iso(self) -> str:
        return datetime.fromtimestamp(self.created).isoformat(timespec='seconds')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'operation': self.operation,
            'who': self.who,
            'created': self.created,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LockInfo':
        return cls(
            id=data.get('id', ''),
            operation=data.get('operation', 'unknown'),
            who=data.get('who', 'unknown'),
            created=float(data.get('created', 0.0)),
        )


def _whoami() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return f'{user}@{socket.gethostname()}'


class StateStore:
    """File-backed state storage with an exclusive lock.

    The state lives at `path`; the lock is `path` with a '.lock' suffix
    appended, created with O_EXCL so only one holder can exist.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')

    def load(self) -> State:
        """Load state, returning an empty State when no file exists.

        Raises:
            StateError: If the file is unreadable or in an unknown format
        """
        if not self.path.exists():
            logger.debug(f"No state at {self.path}, starting empty")
            return State()
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot read state {self.path}: {e}")
        if not isinstance(data, dict):
            raise StateError(f"State {self.path} must be a JSON object")
        state = State.from_dict(data)
        logger.debug(f"Loaded state serial {state.serial} from {self.path}")
        return state

    def save(self, state: State) -> Path:
        """Persist state atomically and increment its serial."""
        state.serial += 1
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f'.{self.path.name}.{os.getpid()}.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(state.to_dict(), f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        logger.debug(f"Saved state serial {state.serial} to {self.path}")
        return self.path

    def read_lock(self) -> Optional[LockInfo]:
        """Return the current lock holder, or None if unlocked."""
        try:
            with open(self.lock_path, encoding='utf-8') as f:
                return LockInfo.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            # Lock file exists but is unreadable (e.g. mid-write); still held
            return LockInfo(id='', operation='unknown', who='unknown', created=0.0)

    def acquire_lock(self, operation: str) -> LockInfo:
        """Take the exclusive lock.

        Raises:
            LockHeldError: If another holder already has the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        info = LockInfo(id=str(uuid.uuid4()), operation=operation, who=_whoami(), created=time.time())
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.read_lock() or LockInfo(id='', operation='unknown', who='unknown', created=0.0)
            raise LockHeldError(holder)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(info.to_dict(), f)
        logger.debug(f"Acquired state lock {info.id} for {operation}")
        return info

    def release_lock(self, info: LockInfo) -> None:
        """Release a lock previously returned by acquire_lock().

        A lock held under a different id is left in place.
        """
        current = self.read_lock()
        if current is None:
            logger.warning(f"State lock {info.id} already released")
            return
        if current.id != info.id:
            logger.warning(f"State lock is held by {current.id}, not releasing {info.id}")
            return
        self.lock_path.unlink(missing_ok=True)
        logger.debug(f"Released state lock {info.id}")

    def force_unlock(self, lock_id: str) -> None:
        """Remove a stuck lock after checking its id.

        Raises:
            StateError: If no lock exists or the id does not match
        """
        current = self.read_lock()
        if current is None:
            raise StateError("State is not locked")
        if current.id != lock_id:
            raise StateError(f"Lock id mismatch: state is locked with id '{current.id}'")
        self.lock_path.unlink(missing_ok=True)
        logger.info(f"Force-released state lock {lock_id}")

    @contextmanager
    def lock(self, operation: str) -> Iterator[LockInfo]:
        """Hold the state lock for the duration of a block.

        The lock is released when the block exits, including on error.
        """
        info = self.acquire_lock(operation)
        try:
            yield info
        finally:
            self.release_lock(info)
