"""
자격증명 암복호화 (AES-256-GCM)

저장 포맷은 관리 API와 공유합니다.
- ciphertext: base64(tag(16바이트) || 암호문)
- iv: base64(12바이트 nonce)
- key: hex 64자리 (32바이트)
"""
from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_IV_SIZE = 12
_TAG_SIZE = 16


class SecretBoxError(Exception):
    """복호화 실패 (키 불일치, 변조된 암호문, 잘못된 인코딩)"""


def _load_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex or "")
    except ValueError as e:
        raise SecretBoxError("AES key is not valid hex") from e
    if len(key) != 32:
        raise SecretBoxError("AES key must be 32 bytes")
    return key


def encrypt_secret(plain: str, key_hex: str) -> tuple[str, str]:
    """(ciphertext, iv) 쌍을 반환합니다. 운영 CLI와 테스트에서 사용합니다."""
    key = _load_key(key_hex)
    iv = os.urandom(_IV_SIZE)
    # AESGCM 출력은 암호문 || tag 이므로 tag를 앞으로 옮겨 저장 포맷에 맞춤
    sealed = AESGCM(key).encrypt(iv, plain.encode("utf-8"), None)
    payload = sealed[-_TAG_SIZE:] + sealed[:-_TAG_SIZE]
    return base64.b64encode(payload).decode("ascii"), base64.b64encode(iv).decode("ascii")


def decrypt_secret(ciphertext: str, iv: str, key_hex: str) -> str:
    key = _load_key(key_hex)
    try:
        iv_bytes = base64.b64decode(iv)
        data = base64.b64decode(ciphertext)
    except (binascii.Error, ValueError) as e:
        raise SecretBoxError("ciphertext/iv is not valid base64") from e

    if len(data) < _TAG_SIZE:
        raise SecretBoxError("ciphertext is too short")

    tag, body = data[:_TAG_SIZE], data[_TAG_SIZE:]
    try:
        plain = AESGCM(key).decrypt(iv_bytes, body + tag, None)
    except (InvalidTag, ValueError) as e:
        raise SecretBoxError("decryption failed") from e
    return plain.decode("utf-8")
