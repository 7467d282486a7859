"""
Storage for the third-party API keys users bring themselves.

Keys are held per user behind a small backend contract so the store can run
against memory in tests and against the database in production:

    load(user_id)        -> {"keys": {service: key}, "use_own_keys": bool}
    save(user_id, data)  -> None
    clear(user_id)       -> None
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from therapai.models.subscription import UserApiKeys

logger = logging.getLogger(__name__)

SERVICES = ("gemini", "elevenlabs", "tavus")

API_SERVICES = {
    "gemini": {
        "name": "Google Gemini",
        "description": "AI Chat and Conversations",
        "website": "https://makersuite.google.com/app/apikey",
        "required": True,
        "features": ["AI Chat", "Therapy Sessions"],
    },
    "elevenlabs": {
        "name": "ElevenLabs",
        "description": "Voice Generation",
        "website": "https://elevenlabs.io",
        "required": False,
        "features": ["Voice Responses", "Audio Generation"],
    },
    "tavus": {
        "name": "Tavus",
        "description": "Video Avatars",
        "website": "https://tavus.io",
        "required": False,
        "features": ["Video Responses"],
    },
}

class ApiKeyError(ValueError):
    """A key was rejected by format validation"""

    def __init__(self, service: str):
        super().__init__(f"Invalid API key format for {service}")
        self.service = service

def validate_api_key(service: str, key: Optional[str]) -> bool:
    """Basic format check, not a live check against the vendor"""
    if not key or not key.strip():
        return False

    if service == "gemini":
        # Gemini keys start with 'AIza' and are about 39 characters
        return key.startswith("AIza") and 35 <= len(key) <= 45
    if service == "elevenlabs":
        return 20 < len(key) < 100
    return len(key) > 10

def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}{'*' * (len(key) - 8)}{key[-4:]}"

def _empty() -> Dict:
    return {"keys": {}, "use_own_keys": False}

class MemoryKeyBackend:
    """Process-local backend, for tests and scripts"""

    def __init__(self):
        self._data: Dict[str, Dict] = {}

    def load(self, user_id: str) -> Dict:
        stored = self._data.get(user_id)
        if stored is None:
            return _empty()
        return {"keys": dict(stored["keys"]), "use_own_keys": stored["use_own_keys"]}

    def save(self, user_id: str, data: Dict) -> None:
        self._data[user_id] = {"keys": dict(data["keys"]), "use_own_keys": bool(data["use_own_keys"])}

    def clear(self, user_id: str) -> None:
        self._data.pop(user_id, None)

class DatabaseKeyBackend:
    """Backend persisting to the user_api_keys table"""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, user_id: str) -> Optional[UserApiKeys]:
        return self.db.query(UserApiKeys).filter(UserApiKeys.user_id == user_id).first()

    def load(self, user_id: str) -> Dict:
        row = self._row(user_id)
        if row is None:
            return _empty()
        return {"keys": dict(row.keys or {}), "use_own_keys": bool(row.use_own_keys)}

    def save(self, user_id: str, data: Dict) -> None:
        row = self._row(user_id)
        if row is None:
            row = UserApiKeys(user_id=user_id)
            self.db.add(row)
        # reassign so the JSON column is flagged dirty
        row.keys = dict(data["keys"])
        row.use_own_keys = bool(data["use_own_keys"])
        row.updated_at = datetime.utcnow()
        self.db.commit()

    def clear(self, user_id: str) -> None:
        row = self._row(user_id)
        if row is not None:
            self.db.delete(row)
            self.db.commit()

class ApiKeyStore:
    """Read/write/clear contract over one user's keys"""

    def __init__(self, backend, user_id: str):
        self.backend = backend
        self.user_id = user_id

    def _load(self) -> Dict:
        return self.backend.load(self.user_id)

    def get_keys(self) -> Dict[str, str]:
        return self._load()["keys"]

    def get_key(self, service: str) -> Optional[str]:
        return self.get_keys().get(service)

    def uses_own_keys(self) -> bool:
        return self._load()["use_own_keys"]

    def has_key(self, service: str) -> bool:
        key = self.get_key(service)
        return bool(key and key.strip())

    def missing_keys(self, services: Iterable[str]) -> List[str]:
        return [service for service in services if not self.has_key(service)]

    def own_key(self, service: str) -> Optional[str]:
        """The user's key for a service, only when the own-keys path is switched on"""
        data = self._load()
        if not data["use_own_keys"]:
            return None
        return data["keys"].get(service) or None

    def set_keys(self, keys: Dict[str, Optional[str]], use_own_keys: Optional[bool] = None) -> None:
        """Merge keys into the store. Empty values remove the key."""
        data = self._load()
        for service, key in keys.items():
            if service not in SERVICES:
                raise ApiKeyError(service)
            if not key:
                data["keys"].pop(service, None)
                continue
            key = key.strip()
            if not validate_api_key(service, key):
                raise ApiKeyError(service)
            data["keys"][service] = key
        if use_own_keys is not None:
            data["use_own_keys"] = use_own_keys
        self.backend.save(self.user_id, data)
        logger.info(f"API keys updated for user {self.user_id}: {sorted(data['keys'])}")

    def set_key(self, service: str, key: str) -> None:
        self.set_keys({service: key})

    def remove_key(self, service: str) -> None:
        data = self._load()
        data["keys"].pop(service, None)
        self.backend.save(self.user_id, data)

    def clear(self) -> None:
        self.backend.clear(self.user_id)

    def masked(self) -> Dict:
        data = self._load()
        return {
            "use_own_keys": data["use_own_keys"],
            "keys": {service: mask_key(key) for service, key in data["keys"].items() if key},
        }
