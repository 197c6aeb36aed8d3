"""Criptografia AES-256-GCM das senhas da API Olé armazenadas por integração.

Formato do texto cifrado: base64(nonce de 12 bytes || ciphertext+tag).
"""
from __future__ import annotations
import base64
import binascii
import secrets
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from .errors import CredentialsError

NONCE_SIZE = 12


def generate_encryption_key() -> str:
    """Gera chave de 256 bits em base64 (valor para OLE_ENCRYPTION_KEY)."""
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


class Cipher:
    """encrypt/decrypt opacos usados pelo cliente da Olé."""

    def __init__(self, encryption_key: str):
        try:
            key = base64.b64decode(encryption_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"encryption_key inválida: {e}") from e
        if len(key) != 32:
            raise ValueError(f"encryption_key deve ter 32 bytes, recebido {len(key)}")
        self._aes = AESGCM(key)

    def encrypt(self, secret: str) -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        ct = self._aes.encrypt(nonce, secret.encode("utf-8"), None)
        return base64.b64encode(nonce + ct).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = base64.b64decode(ciphertext, validate=True)
            nonce, ct = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
            return self._aes.decrypt(nonce, ct, None).decode("utf-8")
        except (binascii.Error, ValueError, InvalidTag) as e:
            raise CredentialsError("senha da integração não pôde ser descriptografada") from e
