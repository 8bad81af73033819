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

"""
HTTP client side of the ciphertext-only relay (see burnlink.Server).

The relay never sees a key: staged uploads carry only the packed frames of the
envelope, and the descriptor (with its key) stays in the share link.
"""

from datetime import timedelta
from typing import Iterator

import requests

from burnlink.Channel import StagingBackend, framesForEnvelope
from burnlink.Descriptor import OfferLocator, StagedLocator
from burnlink.Errors import (
    AlreadyConsumedError, ChannelFailureError, InvalidLinkError, TransferError, TransferExpiredError,
    TransferNotFoundError
)
from burnlink.Framing import Frame, iterPackedFrames, packFrame
from burnlink.Kernel import getLogger, shortId
from burnlink.Settings import RELAY_TIMEOUT, TRANSFER_CHUNK_SIZE
from burnlink.Utils import createSession

logger = getLogger(__name__)

TTL_HEADER = 'X-Burnlink-TTL'
SIZE_HEADER = 'X-Burnlink-Size'
EXPIRES_HEADER = 'X-Burnlink-Expires'

STATUS_ERRORS = {
    404: TransferNotFoundError,
    409: AlreadyConsumedError,
    410: TransferExpiredError,
}


def raiseForRelayStatus(response):
    """Map relay status codes onto the transfer error taxonomy"""
    if response.status_code < 400:
        return

    errorClass = STATUS_ERRORS.get(response.status_code)
    if errorClass is not None:
        raise errorClass()

    message = None
    try:
        message = response.json().get('message')
    except ValueError:
        pass
    raise ChannelFailureError(message or f"Relay answered HTTP {response.status_code}")


class RelayStaging(StagingBackend):
    """Staging on a remote relay over HTTP"""

    def __init__(self, relay: str, chunkSize: int = TRANSFER_CHUNK_SIZE, session=None, timeout=RELAY_TIMEOUT):
        if not relay.startswith(('http://', 'https://')):
            raise InvalidLinkError(f"Relay must be an http(s) URL: {relay}")

        self.relay = relay.rstrip('/')
        self.chunkSize = chunkSize
        self.session = session or createSession()
        self.timeout = timeout

    def transferURL(self, transferId):
        return f'{self.relay}/transfers/{transferId}'

    def stage(self, descriptor, envelope, ttl) -> StagedLocator:
        ttlSeconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)

        frames = framesForEnvelope(envelope, descriptor, self.chunkSize, includeFileInfo=False)
        body = b''.join(packFrame(frame) for frame in frames)

        try:
            response = self.session.put(
                self.transferURL(descriptor.transferId),
                data=body,
                headers={TTL_HEADER: str(int(ttlSeconds)), 'Content-Type': 'application/octet-stream'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ChannelFailureError(f"Failed to reach relay {self.relay}: {e}")

        raiseForRelayStatus(response)
        logger.info(f"[RELAY] Staged {shortId(descriptor.transferId)} ({len(body)} bytes) on {self.relay}")
        return StagedLocator(self.relay)

    def fetch(self, transferId) -> Iterator[Frame]:
        try:
            response = self.session.get(self.transferURL(transferId), stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise ChannelFailureError(f"Failed to reach relay {self.relay}: {e}")

        try:
            raiseForRelayStatus(response)
        except TransferError:
            response.close()
            raise

        # The relay has consumed the transfer at this point; the body is the only copy.
        return self._iterFrames(response)

    def _iterFrames(self, response):
        try:
            yield from iterPackedFrames(response.iter_content(self.chunkSize))
        except requests.RequestException as e:
            raise ChannelFailureError(f"Relay connection broke during transfer: {e}")
        finally:
            response.close()

    def status(self, transferId) -> dict:
        """Non-consuming lookup: {'size', 'expiresAt'} or a lifecycle error"""
        try:
            response = self.session.head(self.transferURL(transferId), timeout=self.timeout)
        except requests.RequestException as e:
            raise ChannelFailureError(f"Failed to reach relay {self.relay}: {e}")

        raiseForRelayStatus(response)
        return {
            'size': int(response.headers.get(SIZE_HEADER, 0)),
            'expiresAt': float(response.headers.get(EXPIRES_HEADER, 0)),
        }


def postAnswer(locator: OfferLocator, answer: dict, session=None, timeout=RELAY_TIMEOUT):
    """Deliver a direct-mode answer to the sender's signaling endpoint"""
    if not locator.signaling:
        raise ChannelFailureError("Link carries no signaling endpoint for the answer")

    session = session or createSession()
    payload = {'peerId': locator.peerId, 'type': answer['type'], 'sdp': answer['sdp']}

    try:
        response = session.post(f"{locator.signaling.rstrip('/')}/answer", json=payload, timeout=timeout)
    except requests.RequestException as e:
        raise ChannelFailureError(f"Failed to reach sender: {e}")

    raiseForRelayStatus(response)
    logger.debug(f"[RELAY] Answer for peer {shortId(locator.peerId)} delivered")
