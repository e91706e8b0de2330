from __future__ import annotations

import json
import threading
import unicodedata
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from admissions_portal.logging import get_logger
from admissions_portal.storage.errors import ConstraintViolation
from admissions_portal.storage.models import (
    ROLES,
    PasswordCredential,
    Principal,
)


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", (email or "").strip().lower())


class PrincipalStore:
    """In-process principal and credential store.

    When ``state_dir`` is given, every mutation is written through to
    ``<state_dir>/state/principals.json`` and reloaded on construction.
    """

    def __init__(self, state_dir: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, PasswordCredential] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.state_dir / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "principals.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # principals
    def create_principal(
        self,
        email: str,
        name: str,
        *,
        role: str = "applicant",
        preferences: Optional[Dict] = None,
    ) -> Principal:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        normalized = normalize_email(email)
        with self._data_lock:
            if any(p.email == normalized for p in self.principals.values()):
                raise ConstraintViolation("email already exists", field="email")
            principal = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                preferences=dict(preferences or {}),
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.email == normalized), None
            )

    def list_principals(self, role: Optional[str] = None, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            results = [p for p in self.principals.values() if not role or p.role == role]
            return sorted(results, key=lambda p: p.created_at, reverse=True)[:limit]

    def update_profile(
        self,
        principal_id: str,
        *,
        name: Optional[str] = None,
        preferences: Optional[Dict] = None,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if name is not None:
                principal.name = name
            if preferences is not None:
                principal.preferences = {**principal.preferences, **preferences}
            principal.updated_at = datetime.utcnow()
            self._persist_state()
            return principal

    def update_role(self, principal_id: str, role: str) -> Optional[Principal]:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.role = role
            principal.updated_at = datetime.utcnow()
            self._persist_state()
            return principal

    def delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            if self.principals.pop(principal_id, None) is None:
                return False
            self.credentials.pop(principal_id, None)
            self._persist_state()
            return True

    # credentials
    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = PasswordCredential(
                principal_id=principal_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()

    def get_password_record(self, principal_id: str) -> Optional[PasswordCredential]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # persistence
    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                {
                    "principal_id": cred.principal_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "updated_at": self._serialize_datetime(cred.updated_at),
                }
                for cred in self.credentials.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist principal state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: PasswordCredential(
                principal_id=entry["principal_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", "argon2id"),
                updated_at=self._deserialize_datetime(entry.get("updated_at"))
                or datetime.utcnow(),
            )
            for entry in data.get("credentials", [])
        }
        self.logger.info("principal_state_loaded", principals=len(self.principals))
        return True

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "email": principal.email,
            "name": principal.name,
            "role": principal.role,
            "created_at": self._serialize_datetime(principal.created_at),
            "updated_at": self._serialize_datetime(principal.updated_at),
            "preferences": principal.preferences,
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", "applicant"),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or datetime.utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            preferences=data.get("preferences") or {},
        )
