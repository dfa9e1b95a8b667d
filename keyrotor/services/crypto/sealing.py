from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from keyrotor.core.config import get_settings
from keyrotor.core.errors import KeyMaterialError
from keyrotor.services.crypto.utils import decode_key_material, ensure_32_bytes


class KeySealer:
    """Seals key material at rest so key records never hold plaintext secrets."""

    def __init__(self, master_key: bytes) -> None:
        self._fernet = Fernet(urlsafe_b64encode(ensure_32_bytes(master_key)))

    def seal(self, secret: bytes) -> str:
        return self._fernet.encrypt(secret).decode("utf-8")

    def unseal(self, ciphertext: str) -> bytes:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8"))
        except InvalidToken as exc:
            raise KeyMaterialError("key material cannot be unsealed with the configured master key") from exc


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.keystore_master_key:
        try:
            return decode_key_material(settings.keystore_master_key)
        except ValueError as exc:
            raise KeyMaterialError("KEYSTORE_MASTER_KEY must be base64 or hex") from exc
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-keystore".encode("utf-8")
    return hashlib.sha256(seed).digest()


def get_key_sealer() -> KeySealer:
    return KeySealer(_load_master_key())
