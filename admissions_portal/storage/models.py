from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

ROLE_ADMIN = "admin"
ROLE_OFFICER = "officer"
ROLE_APPLICANT = "applicant"
ROLES = (ROLE_ADMIN, ROLE_OFFICER, ROLE_APPLICANT)


@dataclass
class Principal:
    id: str
    email: str
    name: str
    role: str = ROLE_APPLICANT
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    preferences: Dict = field(default_factory=dict)

    def public_view(self) -> dict:
        """Fields safe to return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "createdAt": self.created_at.isoformat(),
            "preferences": dict(self.preferences),
        }


@dataclass
class PasswordCredential:
    principal_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=datetime.utcnow)
