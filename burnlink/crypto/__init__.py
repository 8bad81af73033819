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

from abc import ABC, abstractmethod

from burnlink.Errors import CryptoUnavailableError
from burnlink.Kernel import classForName, getLogger

logger = getLogger(__name__)


class CryptoBackend(ABC):
    """Abstract base class for cryptographic backends"""

    @abstractmethod
    def getName(self):
        """Get backend name"""
        pass

    @abstractmethod
    def randomBytes(self, length):
        """Return length bytes from a CSPRNG, raises CryptoUnavailableError without one"""
        pass

    @abstractmethod
    def createAESGCM(self, key):
        """Create a reusable AES-GCM cipher object"""
        pass

    @abstractmethod
    def encryptAESGCM(self, keyOrCipher, plaintext, nonce=None, aad=None):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        pass

    @abstractmethod
    def decryptAESGCM(self, keyOrCipher, nonce, ciphertextWithTag, aad=None):
        """Decrypt with AES-GCM, returns plaintext, raises AuthenticationFailedError"""
        pass


class CryptoInterface:
    """Main crypto interface with automatic backend selection"""

    BACKENDS = ['cryptography']

    def __init__(self, preferredBackend=None):
        self.backend = self._initializeBackend(preferredBackend)

    def _initializeBackend(self, preferredBackend=None):
        """Initialize crypto backend with fallback priority"""
        backendList = list(self.BACKENDS)

        # If specific backend requested, try that first
        if preferredBackend in backendList:
            backendList.remove(preferredBackend)
            backendList.insert(0, preferredBackend)

        for backendName in backendList:
            try:
                backendModule = f'{backendName[0].upper()}{backendName[1:]}'
                backendClass = classForName(f'burnlink.crypto.{backendModule}.{backendModule}Backend')
                return backendClass()
            except ImportError as e:
                logger.debug(f"Failed to load crypto backend {backendName}: {e}")
                continue

        raise CryptoUnavailableError("No crypto backend available - please install 'cryptography'")

    def getBackendName(self):
        """Get current backend name"""
        return self.backend.getName()

    def __getattr__(self, name):
        # Delegate any undefined method to backend
        return getattr(self.backend, name)
