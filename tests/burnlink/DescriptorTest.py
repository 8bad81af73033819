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


import json
import unittest
import zlib

from burnlink.Descriptor import (
    OfferLocator, ShareDescriptorCodec, StagedLocator, TransferDescriptor, decode, encode, nowMillis
)
from burnlink.Encryption import CryptoService, b64urlEncode
from burnlink.Errors import InvalidLinkError


def makeDescriptor(locator=None, **overrides):
    crypto = CryptoService()
    fields = dict(
        transferId=crypto.generateId(),
        key=crypto.exportKey(crypto.generateKey()),
        locator=locator or StagedLocator(),
        originalName='report.pdf',
        originalSize=1234,
        originalType='application/pdf',
        createdAt=nowMillis(),
    )
    fields.update(overrides)
    return TransferDescriptor(**fields)


def tokenFor(data):
    return b64urlEncode(zlib.compress(json.dumps(data).encode('utf-8')))


class ShareDescriptorCodecTest(unittest.TestCase):

    def setUp(self):
        self.codec = ShareDescriptorCodec('https://share.example.com/')

    def testStagedRoundTrip(self):
        descriptor = makeDescriptor(StagedLocator('https://relay.example.com'))
        link = self.codec.encode(descriptor)

        self.assertTrue(link.startswith('https://share.example.com/download/'))
        self.assertEqual(self.codec.decode(link), descriptor)

    def testOfferRoundTrip(self):
        offer = {'type': 'offer', 'sdp': 'v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\n'}
        descriptor = makeDescriptor(OfferLocator(offer, 'a' * 32, 'http://127.0.0.1:8080'))

        decoded = self.codec.decode(self.codec.encode(descriptor))

        self.assertIsInstance(decoded.locator, OfferLocator)
        self.assertEqual(decoded.locator.offer, offer)
        self.assertEqual(decoded, descriptor)

    def testTokenIsURLSafe(self):
        token = self.codec.encodeToken(makeDescriptor(originalName='ünïcødé ファイル.txt'))

        self.assertRegex(token, r'^[A-Za-z0-9_-]+$')
        self.assertEqual(self.codec.decodeToken(token).originalName, 'ünïcødé ファイル.txt')

    def testDecodeAcceptsBareTokenAndForeignOrigin(self):
        descriptor = makeDescriptor()
        token = self.codec.encodeToken(descriptor)

        self.assertEqual(self.codec.decode(token), descriptor)
        self.assertEqual(self.codec.decode(f'  http://other-host:9000/download/{token}  '), descriptor)
        self.assertEqual(self.codec.decode(f'/download/{token}'), descriptor)

    def testModuleLevelHelpers(self):
        descriptor = makeDescriptor()
        link = encode(descriptor, origin='http://localhost:1234')

        self.assertTrue(link.startswith('http://localhost:1234/download/'))
        self.assertEqual(decode(link), descriptor)

    def testUnsupportedSchemaVersion(self):
        data = self.codec.toDict(makeDescriptor())

        for version in (0, 2, '1', None):
            data['v'] = version
            with self.assertRaises(InvalidLinkError):
                self.codec.decode(tokenFor(data))

    def testStructuralCorruption(self):
        descriptor = makeDescriptor()
        token = self.codec.encodeToken(descriptor)

        cases = [
            '',
            'not*base64',
            token[:len(token) // 2], # truncated stream
            b64urlEncode(b'not zlib data'),
            b64urlEncode(zlib.compress(b'not json')),
            b64urlEncode(zlib.compress(b'[1, 2, 3]')),
            'http://example.com/elsewhere/' + token,
        ]
        for link in cases:
            with self.assertRaises(InvalidLinkError, msg=link):
                self.codec.decode(link)

    def testDeeplyNestedPayload(self):
        token = b64urlEncode(zlib.compress(b'[' * 200000, 9))

        with self.assertRaises(InvalidLinkError):
            self.codec.decode(token)

    def testMissingOrInvalidFields(self):
        valid = self.codec.toDict(makeDescriptor())

        mutations = [
            lambda d: d.pop('i'),
            lambda d: d.update(i='NOT-HEX'),
            lambda d: d.update(i='abc'),
            lambda d: d.pop('k'),
            lambda d: d.update(k='raw-key'),
            lambda d: d.pop('n'),
            lambda d: d.update(s=-1),
            lambda d: d.update(s=True),
            lambda d: d.update(s='12'),
            lambda d: d.pop('t'),
            lambda d: d.pop('c'),
            lambda d: d.pop('l'),
            lambda d: d.update(l={'kind': 'carrier-pigeon'}),
            lambda d: d.update(l={'kind': 'staged', 'relay': 42}),
            lambda d: d.update(l={'kind': 'offer', 'peerId': 'p'}),
            lambda d: d.update(l={'kind': 'offer', 'offer': {'type': 'offer', 'sdp': ''}, 'peerId': ''}),
        ]
        for mutate in mutations:
            data = json.loads(json.dumps(valid))
            mutate(data)
            with self.assertRaises(InvalidLinkError, msg=repr(data)):
                self.codec.decode(tokenFor(data))

    def testNonStringLink(self):
        with self.assertRaises(InvalidLinkError):
            self.codec.decode(None)

    def testReprHidesKey(self):
        descriptor = makeDescriptor()

        self.assertNotIn(descriptor.key['k'], repr(descriptor))
        self.assertIsNone(descriptor.withoutKey().key)
        self.assertIsNotNone(descriptor.key)


if __name__ == '__main__':
    unittest.main()
