from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from insightgate.core.config import get_settings
from insightgate.core.errors import SecretConfigurationError


logger = logging.getLogger(__name__)


def _build_fernet(key_material: str | None = None) -> Fernet:
    settings = get_settings()
    source = (key_material if key_material is not None else settings.connection_secret_key or "").strip()
    if not source:
        if settings.connection_secret_key_required:
            raise SecretConfigurationError("CONNECTION_SECRET_KEY is required for connection secret encryption")
        # Optional mode allows local/dev runs with a key derived from the app name.
        logger.warning("connection_secret_key_missing using_dev_key=true")
        source = f"{settings.app_name}:dev-connection-secret"
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


class ConnectionSecretBox:
    """Encrypts tenant connection strings at rest."""

    def __init__(self, key_material: str | None = None) -> None:
        self._fernet = _build_fernet(key_material)

    def encrypt(self, connection_string: str) -> str:
        # Normalize cryptography return types to a concrete string for persistence typing.
        token = self._fernet.encrypt(connection_string.encode("utf-8"))
        return str(token.decode("utf-8"))

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise SecretConfigurationError("Connection secret could not be decrypted with the configured key") from exc
