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

# =============================================================================
# Transfer Exception Classes
# =============================================================================


class TransferError(Exception):
    """Base exception for every user-recoverable transfer failure

    Subclasses define a stable category (used in state reports and relay
    responses) and a default message suitable for showing to the user.
    """

    category = 'transfer-error'
    userMessage = 'The transfer failed.'

    def __init__(self, message=None):
        super().__init__(message or self.userMessage)


# Crypto


class CryptoUnavailableError(TransferError):
    """Raised when no secure random source or AES-GCM backend exists"""
    category = 'crypto-unavailable'
    userMessage = 'Secure encryption is not available on this platform.'


class MalformedKeyError(TransferError):
    """Raised when key material is structurally invalid or unsupported"""
    category = 'malformed-key'
    userMessage = 'The link contains an invalid encryption key.'


class AuthenticationFailedError(TransferError):
    """Raised when the GCM tag does not verify (tampering, corruption or wrong key)"""
    category = 'authentication-failed'
    userMessage = 'The file could not be decrypted; it was corrupted or tampered with.'


# Link


class InvalidLinkError(TransferError):
    category = 'invalid-link'
    userMessage = 'This share link is invalid.'


# Store lifecycle


class TransferNotFoundError(TransferError):
    category = 'not-found'
    userMessage = 'No transfer exists for this link.'


class AlreadyConsumedError(TransferError):
    category = 'already-consumed'
    userMessage = 'This link has already been used.'


class TransferExpiredError(TransferError):
    category = 'expired'
    userMessage = 'This link has expired.'


# Framing


class ProtocolViolationError(TransferError):
    category = 'protocol-violation'
    userMessage = 'The sender did not follow the transfer protocol.'


class IncompleteTransferError(TransferError):
    category = 'incomplete-transfer'
    userMessage = 'The transfer ended before all data arrived.'


# Transport


class ChannelFailureError(TransferError):
    """Raised by channel adapters; the only failure worth retrying from a fresh resolve"""
    category = 'channel-failure'
    userMessage = 'The connection to the sender failed.'
    retryable = True
