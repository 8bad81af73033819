#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# BurnLink - Single-use, end-to-end encrypted file links
# Copyright (C) 2026 BurnLink contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import base64
import binascii

from dataclasses import dataclass, field

from burnlink.Errors import MalformedKeyError
from burnlink.Kernel import getLogger
from burnlink.crypto import CryptoInterface

logger = getLogger(__name__)

ALGORITHM = 'A256GCM'
KEY_SIZE = 32 # AES-256
NONCE_SIZE = 12 # 96-bit GCM nonce
TAG_SIZE = 16
ID_SIZE = 16 # 128-bit transfer id


def b64urlEncode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def b64urlDecode(text: str) -> bytes:
    padded = text + '=' * (-len(text) % 4)
    return base64.b64decode(padded, altchars=b'-_', validate=True)


@dataclass(frozen=True)
class EncryptionKey:
    keyBytes: bytes = field(repr=False)
    algorithm: str = ALGORITHM


@dataclass(frozen=True)
class CipherEnvelope:
    ciphertext: bytes # includes the 16-byte tag
    nonce: bytes

    def __len__(self):
        return len(self.ciphertext)


class CryptoService:
    """Key handling and authenticated encryption for one process

    Every encrypt() draws a fresh 96-bit nonce; keys are single-transfer and
    never derived from each other, so nonce reuse under one key is bounded by
    the birthday limit of random 96-bit values.
    """

    def __init__(self, crypto=None):
        self.crypto = crypto or CryptoInterface()

    def generateKey(self) -> EncryptionKey:
        return EncryptionKey(self.crypto.randomBytes(KEY_SIZE))

    def exportKey(self, key: EncryptionKey) -> dict:
        """Export as a JSON Web Key, the form carried inside share links"""
        return {
            'kty': 'oct',
            'k': b64urlEncode(key.keyBytes),
            'alg': key.algorithm,
            'ext': True,
            'key_ops': ['encrypt', 'decrypt'],
        }

    def importKey(self, material) -> EncryptionKey:
        if not isinstance(material, dict):
            raise MalformedKeyError(f"Key material must be a JWK object, got {type(material).__name__}")

        if material.get('kty') != 'oct':
            raise MalformedKeyError(f"Unsupported key type: {material.get('kty')!r}")

        algorithm = material.get('alg', ALGORITHM)
        if algorithm != ALGORITHM:
            raise MalformedKeyError(f"Unsupported algorithm: {algorithm!r}")

        encoded = material.get('k')
        if not isinstance(encoded, str):
            raise MalformedKeyError("Key material has no 'k' value")

        try:
            keyBytes = b64urlDecode(encoded)
        except (binascii.Error, ValueError) as e:
            raise MalformedKeyError(f"Key is not valid base64url: {e}")

        if len(keyBytes) != KEY_SIZE:
            raise MalformedKeyError(f"Key must be {KEY_SIZE * 8} bits, got {len(keyBytes) * 8}")

        return EncryptionKey(keyBytes, algorithm)

    def encrypt(self, plaintext: bytes, key: EncryptionKey) -> CipherEnvelope:
        nonce = self.crypto.randomBytes(NONCE_SIZE)
        _, ciphertext = self.crypto.encryptAESGCM(key.keyBytes, plaintext, nonce)
        logger.debug(f"[CRYPTO] Encrypted {len(plaintext)} bytes into {len(ciphertext)} bytes")
        return CipherEnvelope(ciphertext, nonce)

    def decrypt(self, envelope: CipherEnvelope, key: EncryptionKey) -> bytes:
        """Decrypt or raise AuthenticationFailedError; never yields partial plaintext"""
        return self.crypto.decryptAESGCM(key.keyBytes, envelope.nonce, envelope.ciphertext)

    def generateId(self) -> str:
        return self.crypto.randomBytes(ID_SIZE).hex()
