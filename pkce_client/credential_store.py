"""
Durable credential storage (access token, refresh token, expiry, PKCE verifier).
Four string keys in one table; every save writes all of its fields in a single
transaction so a reader never sees a half-updated credential.
"""
import logging
import time
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from pkce_client.models import StorageEntry

logger = logging.getLogger(__name__)

KEY_ACCESS_TOKEN = "access_token"
KEY_REFRESH_TOKEN = "refresh_token"
KEY_EXPIRATION_TIME = "expiration_time"
KEY_CODE_VERIFIER = "code_verifier"

ALL_KEYS = (KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN, KEY_EXPIRATION_TIME, KEY_CODE_VERIFIER)

# save() keyword -> storage key
_FIELD_KEYS = {
    "access_token": KEY_ACCESS_TOKEN,
    "refresh_token": KEY_REFRESH_TOKEN,
    "expires_at": KEY_EXPIRATION_TIME,
    "code_verifier": KEY_CODE_VERIFIER,
}


def now_ms(clock=time.time) -> int:
    return int(clock() * 1000)


@dataclass
class Credential:
    """
    One issued token set. expires_at is epoch milliseconds (issue instant + expires_in).
    refresh_token is None when the provider did not issue one in this exchange.
    """

    access_token: str
    refresh_token: str | None
    expires_at: int

    def expired(self, now: int) -> bool:
        return now >= self.expires_at

    def seconds_until_expiry(self, now: int) -> float:
        return (self.expires_at - now) / 1000


class CredentialStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, **fields: str | int | None) -> None:
        """
        Write any of access_token, refresh_token, expires_at, code_verifier in one transaction.
        A field given as None removes that key.
        """
        unknown = set(fields) - set(_FIELD_KEYS)
        if unknown:
            raise TypeError(f"Unknown credential fields: {', '.join(sorted(unknown))}")
        with self._session_factory() as db:
            with db.begin():
                for name, value in fields.items():
                    key = _FIELD_KEYS[name]
                    if value is None:
                        db.execute(delete(StorageEntry).where(StorageEntry.key == key))
                        continue
                    entry = db.get(StorageEntry, key)
                    if entry is None:
                        db.add(StorageEntry(key=key, value=str(value)))
                    else:
                        entry.value = str(value)

    def save_credential(self, credential: Credential) -> None:
        """Persist a refreshed credential; a missing refresh_token keeps the stored one."""
        fields = {"access_token": credential.access_token, "expires_at": credential.expires_at}
        if credential.refresh_token:
            fields["refresh_token"] = credential.refresh_token
        self.save(**fields)

    def _read(self, db: Session, keys: tuple[str, ...]) -> dict[str, str]:
        rows = db.scalars(select(StorageEntry).where(StorageEntry.key.in_(keys)))
        return {row.key: row.value for row in rows}

    def load(self) -> Credential | None:
        """Stored credential, or None if access token or expiry is missing or unreadable."""
        with self._session_factory() as db:
            values = self._read(db, (KEY_ACCESS_TOKEN, KEY_REFRESH_TOKEN, KEY_EXPIRATION_TIME))
        access_token = values.get(KEY_ACCESS_TOKEN)
        expiration = values.get(KEY_EXPIRATION_TIME)
        if not access_token or not expiration:
            return None
        try:
            expires_at = int(expiration)
        except ValueError:
            logger.warning("Ignoring stored credential with unreadable expiration time")
            return None
        return Credential(
            access_token=access_token,
            refresh_token=values.get(KEY_REFRESH_TOKEN) or None,
            expires_at=expires_at,
        )

    def load_refresh_token(self) -> str | None:
        with self._session_factory() as db:
            return self._read(db, (KEY_REFRESH_TOKEN,)).get(KEY_REFRESH_TOKEN) or None

    def save_verifier(self, code_verifier: str) -> None:
        self.save(code_verifier=code_verifier)

    def load_verifier(self) -> str | None:
        with self._session_factory() as db:
            return self._read(db, (KEY_CODE_VERIFIER,)).get(KEY_CODE_VERIFIER) or None

    def discard_verifier(self) -> None:
        self.save(code_verifier=None)

    def clear(self) -> None:
        """Remove tokens, expiry and verifier."""
        with self._session_factory() as db:
            with db.begin():
                db.execute(delete(StorageEntry).where(StorageEntry.key.in_(ALL_KEYS)))
