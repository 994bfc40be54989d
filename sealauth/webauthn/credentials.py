from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol, Tuple

from sealauth.auth.models import Credential


class CredentialRepository(Protocol):
    """Where registered passkeys live. Applications back this with their user store."""

    def add(self, user_name: str, credential: Credential) -> None:
        ...

    def get(self, credential_id: str) -> Optional[Credential]:
        ...

    def owner(self, credential_id: str) -> Optional[str]:
        ...

    def list_for_user(self, user_name: str) -> List[Credential]:
        ...

    def update(self, credential: Credential) -> None:
        """Persist a new counter / backup state for an existing credential."""
        ...


class MemoryCredentialRepository:
    """In-process repository for development and tests."""

    def __init__(self) -> None:
        self._by_id: Dict[str, Tuple[str, Credential]] = {}
        self._lock = threading.Lock()

    def add(self, user_name: str, credential: Credential) -> None:
        with self._lock:
            self._by_id[credential.id] = (user_name, credential)

    def get(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            entry = self._by_id.get(credential_id)
        return entry[1] if entry else None

    def owner(self, credential_id: str) -> Optional[str]:
        with self._lock:
            entry = self._by_id.get(credential_id)
        return entry[0] if entry else None

    def list_for_user(self, user_name: str) -> List[Credential]:
        with self._lock:
            return [cred for owner, cred in self._by_id.values() if owner == user_name]

    def update(self, credential: Credential) -> None:
        with self._lock:
            entry = self._by_id.get(credential.id)
            if entry is None:
                raise KeyError(credential.id)
            self._by_id[credential.id] = (entry[0], credential)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
