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
Share descriptor and its link codec.

A link is ``<origin>/download/<token>``. The token is self-contained: URL-safe
base64 (unpadded) of zlib-compressed compact JSON::

    {"v": 1, "i": transferId, "k": jwk, "l": locator,
     "n": name, "s": size, "t": mimeType, "c": createdAtMillis}

Locators are ``{"kind": "staged", "relay": url|null}`` or
``{"kind": "offer", "offer": {"type", "sdp"}, "peerId": id, "signaling": url|null}``.
Any structural problem decodes to InvalidLinkError, never a partial descriptor.
"""

import binascii
import dataclasses
import json
import re
import time
import zlib

from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlparse

from burnlink.Encryption import b64urlDecode, b64urlEncode
from burnlink.Errors import InvalidLinkError
from burnlink.Kernel import getLogger
from burnlink.Settings import DEFAULT_ORIGIN, LINK_PATH

logger = getLogger(__name__)

SCHEMA_VERSION = 1
SUPPORTED_VERSIONS = (SCHEMA_VERSION,)

MAX_TOKEN_LENGTH = 256 * 1024
MAX_JSON_SIZE = 1024 * 1024

TRANSFER_ID_PATTERN = re.compile(r'^[0-9a-f]{32}$')


@dataclass
class StagedLocator:
    relay: Optional[str] = None # None: the sender's own session store

    kind = 'staged'

    def toDict(self):
        return {'kind': self.kind, 'relay': self.relay}


@dataclass
class OfferLocator:
    offer: dict
    peerId: str
    signaling: Optional[str] = None

    kind = 'offer'

    def toDict(self):
        return {'kind': self.kind, 'offer': self.offer, 'peerId': self.peerId, 'signaling': self.signaling}


Locator = Union[StagedLocator, OfferLocator]


@dataclass
class TransferDescriptor:
    transferId: str
    key: Optional[dict]
    locator: Locator
    originalName: str
    originalSize: int
    originalType: str
    createdAt: int # epoch milliseconds

    def __repr__(self):
        # Key material stays out of logs and tracebacks.
        return (
            f"TransferDescriptor(transferId={self.transferId[:8]}.., locator={self.locator.kind}, "
            f"originalName={self.originalName!r}, originalSize={self.originalSize})"
        )

    def withoutKey(self):
        return dataclasses.replace(self, key=None)


def nowMillis() -> int:
    return int(time.time() * 1000)


def _locatorFromDict(data) -> Locator:
    if not isinstance(data, dict):
        raise InvalidLinkError("Locator is missing")

    kind = data.get('kind')
    if kind == StagedLocator.kind:
        relay = data.get('relay')
        if relay is not None and not isinstance(relay, str):
            raise InvalidLinkError("Relay must be a URL")
        return StagedLocator(relay)

    if kind == OfferLocator.kind:
        offer = data.get('offer')
        peerId = data.get('peerId')
        signaling = data.get('signaling')
        if not isinstance(offer, dict) or not isinstance(offer.get('sdp'), str) or not isinstance(
            offer.get('type'), str
        ):
            raise InvalidLinkError("Offer locator carries no session description")
        if not isinstance(peerId, str) or not peerId:
            raise InvalidLinkError("Offer locator carries no peer id")
        if signaling is not None and not isinstance(signaling, str):
            raise InvalidLinkError("Signaling must be a URL")
        return OfferLocator({'type': offer['type'], 'sdp': offer['sdp']}, peerId, signaling)

    raise InvalidLinkError(f"Unknown locator kind: {kind!r}")


def _require(data, name, types):
    value = data.get(name)
    if not isinstance(value, types) or isinstance(value, bool):
        raise InvalidLinkError(f"Link field '{name}' is missing or invalid")
    return value


class ShareDescriptorCodec:

    def __init__(self, origin=DEFAULT_ORIGIN, linkPath=LINK_PATH):
        self.origin = origin.rstrip('/')
        self.linkPath = linkPath.strip('/')

    def toDict(self, descriptor: TransferDescriptor) -> dict:
        return {
            'v': SCHEMA_VERSION,
            'i': descriptor.transferId,
            'k': descriptor.key,
            'l': descriptor.locator.toDict(),
            'n': descriptor.originalName,
            's': descriptor.originalSize,
            't': descriptor.originalType,
            'c': descriptor.createdAt,
        }

    def fromDict(self, data, requireKey=True) -> TransferDescriptor:
        if not isinstance(data, dict):
            raise InvalidLinkError("Link payload is not an object")

        version = data.get('v')
        if version not in SUPPORTED_VERSIONS:
            raise InvalidLinkError(f"Unsupported link version: {version!r}")

        transferId = _require(data, 'i', str)
        if not TRANSFER_ID_PATTERN.match(transferId):
            raise InvalidLinkError("Link carries a malformed transfer id")

        key = data.get('k')
        if requireKey and not isinstance(key, dict):
            raise InvalidLinkError("Link carries no key")
        if key is not None and not isinstance(key, dict):
            raise InvalidLinkError("Link key must be an object")

        size = _require(data, 's', int)
        if size < 0:
            raise InvalidLinkError("Link carries a negative size")

        return TransferDescriptor(
            transferId=transferId,
            key=key,
            locator=_locatorFromDict(data.get('l')),
            originalName=_require(data, 'n', str),
            originalSize=size,
            originalType=_require(data, 't', str),
            createdAt=_require(data, 'c', int),
        )

    def encodeToken(self, descriptor: TransferDescriptor) -> str:
        payload = json.dumps(self.toDict(descriptor), separators=(',', ':'), sort_keys=True).encode('utf-8')
        return b64urlEncode(zlib.compress(payload, 9))

    def decodeToken(self, token: str) -> TransferDescriptor:
        if not isinstance(token, str) or not token:
            raise InvalidLinkError("Link is empty")
        if len(token) > MAX_TOKEN_LENGTH:
            raise InvalidLinkError("Link is too long")

        try:
            compressed = b64urlDecode(token)
        except (binascii.Error, ValueError) as e:
            raise InvalidLinkError(f"Link is not valid base64url: {e}")

        try:
            inflater = zlib.decompressobj()
            payload = inflater.decompress(compressed, MAX_JSON_SIZE)
            if inflater.unconsumed_tail or not inflater.eof:
                raise InvalidLinkError("Link payload is truncated or oversized")
        except zlib.error as e:
            raise InvalidLinkError(f"Link payload is corrupted: {e}")

        try:
            data = json.loads(payload.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
            raise InvalidLinkError(f"Link payload is not JSON: {e}")

        return self.fromDict(data)

    def encode(self, descriptor: TransferDescriptor) -> str:
        return f'{self.origin}/{self.linkPath}/{self.encodeToken(descriptor)}'

    def decode(self, linkOrToken: str) -> TransferDescriptor:
        return self.decodeToken(self.extractToken(linkOrToken))

    def extractToken(self, linkOrToken: str) -> str:
        if not isinstance(linkOrToken, str):
            raise InvalidLinkError("Link must be a string")

        text = linkOrToken.strip()
        if '/' not in text:
            return text

        path = urlparse(text).path if '://' in text else text
        segments = [segment for segment in path.split('/') if segment]
        if len(segments) < 2 or segments[-2] != self.linkPath:
            raise InvalidLinkError(f"Link path must end with /{self.linkPath}/<token>")
        return segments[-1]


# Module-level helpers using default origin
_defaultCodec = ShareDescriptorCodec()


def encode(descriptor: TransferDescriptor, origin=None) -> str:
    codec = ShareDescriptorCodec(origin) if origin else _defaultCodec
    return codec.encode(descriptor)


def decode(linkOrToken: str) -> TransferDescriptor:
    return _defaultCodec.decode(linkOrToken)
