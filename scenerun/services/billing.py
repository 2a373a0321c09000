"""Resolution of which provider credential to use and bill."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from scenerun.config import Settings, settings as default_settings
from scenerun.errors import NoCredentialError
from scenerun.models.user import User, UserApiKey
from scenerun.services.crypto import KeyDecryptionError, decrypt_api_key

logger = logging.getLogger(__name__)

SOURCE_SPONSOR = "sponsor"
SOURCE_USER = "user"
SOURCE_SYSTEM = "system"


@dataclass(frozen=True)
class ResolvedKey:
    """A usable key plus who pays for calls made with it."""

    api_key: str
    source: str
    sponsor_user_id: Optional[int] = None

    def __repr__(self):
        return f"ResolvedKey(source={self.source!r}, sponsor_user_id={self.sponsor_user_id})"


class KeyResolver:
    """Three-tier chain: sponsor's key, then the user's own key, then the system key."""

    def __init__(self, db: Session, settings: Settings = default_settings):
        self.db = db
        self.settings = settings

    def _stored_key(self, user_id: int, provider: str) -> Optional[str]:
        row = (
            self.db.query(UserApiKey)
            .filter(
                UserApiKey.user_id == user_id,
                UserApiKey.provider == provider,
                UserApiKey.is_active.is_(True),
            )
            .order_by(UserApiKey.updated_at.desc(), UserApiKey.id.desc())
            .first()
        )
        if not row:
            return None
        try:
            return decrypt_api_key(row.encrypted_key, self.settings.CREDENTIALS_ENCRYPTION_KEY) or None
        except KeyDecryptionError:
            logger.error(f"Stored {provider} key for user {user_id} could not be decrypted")
            return None

    def resolve(self, user_id: Optional[int], provider: Optional[str] = None) -> ResolvedKey:
        """
        Resolve the credential for ``user_id``.

        Raises:
            NoCredentialError: no tier produced a usable key
        """
        provider = provider or self.settings.IMAGE_PROVIDER
        user = self.db.get(User, user_id) if user_id is not None else None

        if user and user.api_sponsor_id:
            key = self._stored_key(user.api_sponsor_id, provider)
            if key:
                return ResolvedKey(key, SOURCE_SPONSOR, sponsor_user_id=user.api_sponsor_id)
            logger.warning(f"Sponsor {user.api_sponsor_id} of user {user_id} has no usable {provider} key")

        if user:
            key = self._stored_key(user.id, provider)
            if key:
                return ResolvedKey(key, SOURCE_USER)

        if self.settings.SYSTEM_IMAGE_API_KEY:
            return ResolvedKey(self.settings.SYSTEM_IMAGE_API_KEY, SOURCE_SYSTEM)

        raise NoCredentialError(f"No {provider} API key available for user {user_id}")
