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

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from burnlink.Errors import AuthenticationFailedError, CryptoUnavailableError, MalformedKeyError
from burnlink.Kernel import getLogger
from burnlink.crypto import CryptoBackend

logger = getLogger(__name__)

NONCE_SIZE = 12 # 96-bit nonce for GCM


class CryptographyBackend(CryptoBackend):
    """Cryptography library backend implementation"""

    def __init__(self):
        self.AESGCM = AESGCM

    def getName(self):
        return "cryptography"

    def randomBytes(self, length):
        try:
            return os.urandom(length)
        except NotImplementedError as e:
            raise CryptoUnavailableError(f"No secure random source: {e}")

    def createAESGCM(self, key):
        """Create a reusable AES-GCM cipher object"""
        try:
            return self.AESGCM(key)
        except (TypeError, ValueError) as e:
            raise MalformedKeyError(f"Unusable AES-GCM key: {e}")

    def _cipherFor(self, keyOrCipher):
        # Accept either a key (bytes) or pre-created cipher object (AESGCM instance)
        if isinstance(keyOrCipher, self.AESGCM):
            return keyOrCipher
        return self.createAESGCM(keyOrCipher)

    def encryptAESGCM(self, keyOrCipher, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        aesgcm = self._cipherFor(keyOrCipher)

        if nonce is None:
            nonce = self.randomBytes(NONCE_SIZE)

        ciphertext = aesgcm.encrypt(nonce, bytes(plaintext), aad)
        return (nonce, ciphertext)

    def decryptAESGCM(self, keyOrCipher, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext"""
        aesgcm = self._cipherFor(keyOrCipher)

        try:
            return aesgcm.decrypt(nonce, bytes(ciphertextWithTag), aad)
        except InvalidTag:
            raise AuthenticationFailedError()
        except (TypeError, ValueError) as e:
            # Empty or oversized nonce, truncated input
            logger.debug(f"AES-GCM rejected input: {e}")
            raise AuthenticationFailedError()
