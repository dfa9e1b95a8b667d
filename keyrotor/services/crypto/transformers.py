from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Protocol, Sequence

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from keyrotor.core.errors import KeyMaterialError
from keyrotor.domain.state import MODE_AESCBC, MODE_IDENTITY, KeyReference, KeyState


ENCRYPTED_PREFIX = b"k8s:enc:"
_AES_BLOCK_BITS = 128
_IV_SIZE = 16


class Transformer(Protocol):
    reference: KeyReference

    def encode(self, plaintext: bytes) -> bytes:
        ...

    def matches(self, data: bytes) -> bool:
        ...

    def decode(self, data: bytes) -> bytes:
        ...


class IdentityTransformer:
    # Stores plaintext; only reads values that carry no encryption prefix.
    def __init__(self, reference: KeyReference) -> None:
        self.reference = reference

    def encode(self, plaintext: bytes) -> bytes:
        return plaintext

    def matches(self, data: bytes) -> bool:
        return not data.startswith(ENCRYPTED_PREFIX)

    def decode(self, data: bytes) -> bytes:
        if not self.matches(data):
            raise ValueError("identity provider cannot read encrypted data")
        return data


class AESCBCTransformer:
    """AES-256-CBC with PKCS#7 padding behind a per-key prefix.

    Layout: ``k8s:enc:aescbc:v1:<key_id>:`` + 16-byte IV + ciphertext.
    """

    def __init__(self, reference: KeyReference, secret: bytes) -> None:
        if len(secret) != 32:
            raise KeyMaterialError(f"aescbc key {reference.key_id} must be 32 bytes")
        self.reference = reference
        self._secret = secret
        self._prefix = f"k8s:enc:aescbc:v1:{reference.key_id}:".encode("ascii")

    def encode(self, plaintext: bytes) -> bytes:
        iv = os.urandom(_IV_SIZE)
        padder = padding.PKCS7(_AES_BLOCK_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._secret), modes.CBC(iv)).encryptor()
        return self._prefix + iv + encryptor.update(padded) + encryptor.finalize()

    def matches(self, data: bytes) -> bool:
        return data.startswith(self._prefix)

    def decode(self, data: bytes) -> bytes:
        if not self.matches(data):
            raise ValueError(f"data was not written with aescbc key {self.reference.key_id}")
        body = data[len(self._prefix):]
        if len(body) < _IV_SIZE * 2 or len(body) % _IV_SIZE:
            raise ValueError("aescbc payload is truncated")
        iv, cipher_text = body[:_IV_SIZE], body[_IV_SIZE:]
        decryptor = Cipher(algorithms.AES(self._secret), modes.CBC(iv)).decryptor()
        padded = decryptor.update(cipher_text) + decryptor.finalize()
        unpadder = padding.PKCS7(_AES_BLOCK_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()


def build_transformer(reference: KeyReference, key: KeyState | None) -> Transformer:
    if reference.mode == MODE_IDENTITY:
        return IdentityTransformer(reference)
    if reference.mode == MODE_AESCBC:
        if key is None or key.secret is None:
            raise KeyMaterialError(f"no key material for aescbc key {reference.key_id}")
        return AESCBCTransformer(reference, key.secret)
    raise KeyMaterialError(f"unsupported provider mode: {reference.mode}")


@dataclass(frozen=True)
class ProviderChain:
    """Writes with the first provider; reads with whichever provider claims the value."""

    providers: tuple[Transformer, ...]

    @classmethod
    def build(cls, references: Sequence[KeyReference], keys: dict[int, KeyState]) -> ProviderChain:
        if not references:
            raise KeyMaterialError("provider chain requires at least one provider")
        return cls(
            providers=tuple(
                build_transformer(ref, keys.get(ref.key_id) if ref.key_id is not None else None)
                for ref in references
            )
        )

    @property
    def writer(self) -> Transformer:
        return self.providers[0]

    def encode(self, plaintext: bytes) -> bytes:
        return self.writer.encode(plaintext)

    def decode(self, data: bytes) -> tuple[bytes, KeyReference]:
        for provider in self.providers:
            if provider.matches(data):
                return provider.decode(data), provider.reference
        raise ValueError("no configured provider can read this value")

    def is_current(self, data: bytes) -> bool:
        # Identity-written values are also claimed by an identity writer, so check the writer first.
        return self.writer.matches(data)
