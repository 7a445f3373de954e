import fcntl
import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence, MutableSequence, Optional, Iterator, Iterable

import jsonschema
from jsonschema import ValidationError

from tenant import Tenant, ResourceRef
from util import UserError, atomic_write


class RegistryEntry:
    """Everything the registry knows about a single tenant: its parameters and the inventory of created objects."""

    schema: dict = {
        "type": "object",
        "required": ["username", "resources"],
        "additionalProperties": False,
        "properties": {
            "username": {"type": "string", "minLength": 1},
            "updated": {"type": "string"},
            "tenant": {
                "type": ["object", "null"],
                "required": ["username", "domain", "namespace", "role"],
                "additionalProperties": True
            },
            "resources": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["kind", "name"],
                    "additionalProperties": False,
                    "properties": {
                        "kind": {"type": "string", "minLength": 1},
                        "name": {"type": "string", "minLength": 1},
                        "namespace": {"type": "string", "minLength": 1},
                        "apiVersion": {"type": "string", "minLength": 1}
                    }
                }
            }
        }
    }

    def __init__(self, username: str, tenant: Tenant = None, resources: Iterable[ResourceRef] = None,
                 updated: datetime = None) -> None:
        super().__init__()
        self._username: str = username
        self._tenant: Tenant = tenant
        self._resources: MutableSequence[ResourceRef] = []
        self._updated: datetime = updated
        for ref in resources if resources else []:
            self.add(ref)

    @property
    def username(self) -> str:
        return self._username

    @property
    def tenant(self) -> Optional[Tenant]:
        return self._tenant

    @tenant.setter
    def tenant(self, value: Tenant) -> None:
        self._tenant = value

    @property
    def resources(self) -> Sequence[ResourceRef]:
        return self._resources

    @property
    def updated(self) -> Optional[datetime]:
        return self._updated

    def touch(self) -> None:
        self._updated = datetime.now(timezone.utc)

    def add(self, ref: ResourceRef) -> bool:
        if ref in self._resources:
            return False
        self._resources.append(ref)
        return True

    def discard(self, ref: ResourceRef) -> None:
        if ref in self._resources:
            self._resources.remove(ref)

    def teardown_plan(self) -> Sequence[ResourceRef]:
        # sorted() is stable, so objects of equal rank keep their (reverse) creation order
        return sorted(reversed(self._resources), key=lambda ref: ref.teardown_rank)

    def to_dict(self) -> dict:
        return {
            'username': self.username,
            'updated': self.updated.isoformat() if self.updated else None,
            'tenant': self.tenant.to_dict() if self.tenant else None,
            'resources': [ref.to_dict() for ref in self.resources]
        }

    @staticmethod
    def from_dict(data: dict) -> 'RegistryEntry':
        jsonschema.validate(data, RegistryEntry.schema)
        return RegistryEntry(username=data['username'],
                             tenant=Tenant.from_dict(data['tenant']) if data.get('tenant') else None,
                             resources=[ResourceRef.from_dict(r) for r in data['resources']],
                             updated=datetime.fromisoformat(data['updated']) if data.get('updated') else None)


class LifecycleRegistry:
    """File-backed inventory of tenants and the objects created for them.

    Each tenant is stored as its own JSON document under '<root>/.registry/'. Writes go through a temporary file and
    an atomic rename, and 'lock' serializes concurrent operations on the same tenant through an exclusive lock
    file."""

    def __init__(self, root: Path) -> None:
        super().__init__()
        self._root: Path = Path(root)
        self._dir: Path = self._root / '.registry'

    @property
    def root(self) -> Path:
        return self._root

    def _entry_path(self, username: str) -> Path:
        return self._dir / f"{username}.json"

    @contextmanager
    def lock(self, username: str) -> Iterator[None]:
        os.makedirs(str(self._dir), exist_ok=True)
        with open(self._dir / f".{username}.lock", 'a') as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

    def lookup(self, username: str) -> Optional[RegistryEntry]:
        path: Path = self._entry_path(username)
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                return RegistryEntry.from_dict(json.loads(f.read()))
        except (json.JSONDecodeError, ValidationError) as e:
            message: str = e.message if isinstance(e, ValidationError) else e.msg
            raise UserError(f"illegal state: registry entry '{path}' is corrupt: {message}") from e

    def save(self, entry: RegistryEntry) -> None:
        entry.touch()
        with atomic_write(self._entry_path(entry.username)) as f:
            f.write(json.dumps(entry.to_dict(), indent=2).encode('utf-8'))

    def record(self, username: str, resources: Iterable[ResourceRef], tenant: Tenant = None) -> RegistryEntry:
        """Adds the given resources (and optionally the tenant parameters) to the tenant's entry."""
        entry: RegistryEntry = self.lookup(username)
        if entry is None:
            entry = RegistryEntry(username=username)
        for ref in resources:
            entry.add(ref)
        if tenant is not None:
            entry.tenant = tenant
        self.save(entry)
        return entry

    def forget(self, username: str, ref: ResourceRef) -> None:
        """Drops a single resource from the tenant's inventory (typically after it was deleted)."""
        entry: RegistryEntry = self.lookup(username)
        if entry is not None:
            entry.discard(ref)
            self.save(entry)

    def remove(self, username: str) -> bool:
        path: Path = self._entry_path(username)
        if path.exists():
            path.unlink()
            return True
        return False

    def usernames(self) -> Sequence[str]:
        if not self._dir.exists():
            return []
        return sorted(p.stem for p in self._dir.glob('*.json') if not p.name.startswith('.'))

    def entries(self) -> Sequence[RegistryEntry]:
        return [entry for entry in (self.lookup(username) for username in self.usernames()) if entry is not None]

    def owner_of_subdomain(self, subdomain: str) -> Optional[str]:
        for entry in self.entries():
            if entry.tenant is not None and entry.tenant.subdomain == subdomain:
                return entry.username
        return None

    def owner_of_namespace(self, namespace: str) -> Optional[str]:
        for entry in self.entries():
            if entry.tenant is not None and entry.tenant.namespace == namespace:
                return entry.username
        return None
