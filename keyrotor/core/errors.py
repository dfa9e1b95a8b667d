from __future__ import annotations


class KeyrotorError(Exception):
    """Base error for keyrotor."""


class ConflictError(KeyrotorError):
    """A conditional write lost the race against a concurrent writer."""


class StateUnavailableError(KeyrotorError):
    """Shared state could not be read or written."""


class UnknownModeError(KeyrotorError):
    """Unsupported encryption mode."""


class UnbackedKeyError(KeyrotorError):
    """A configuration references a key that has no key record."""

    def __init__(self, key_ids: list[int]) -> None:
        self.key_ids = sorted(key_ids)
        super().__init__(f"configuration references missing keys: {self.key_ids}")


class KeyInUseError(KeyrotorError):
    """Refused to delete a key still referenced by a configuration."""

    def __init__(self, key_id: int, where: str) -> None:
        self.key_id = key_id
        self.where = where
        super().__init__(f"key {key_id} is still referenced by {where}")


class KeyMaterialError(KeyrotorError):
    """Key material is missing, malformed or cannot be unsealed."""


class MigrationError(KeyrotorError):
    """The migration collaborator did not confirm a rewrite."""
