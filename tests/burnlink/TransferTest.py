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


import asyncio
import dataclasses
import os
import unittest
import zlib

from burnlink.Channel import LocalStaging, MemoryChannelFactory
from burnlink.Descriptor import OfferLocator, StagedLocator
from burnlink.Encryption import b64urlEncode
from burnlink.Framing import Frame, FrameType
from burnlink.Settings import TransferConfig, TransferMode
from burnlink.Store import ManualClock, TransientStore
from burnlink.Transfer import Delivery, ReceiverSession, SenderSession, TransferOrchestrator, TransferState

ORIGIN = 'https://share.example.com'


class TamperingStaging(LocalStaging):
    """Flips one bit of the first chunk on the way out"""

    def fetch(self, transferId):
        for frame in super().fetch(transferId):
            if frame.type == FrameType.CHUNK and frame.chunkIndex == 0:
                payload = bytearray(frame.data)
                payload[0] ^= 0x01
                frame = Frame.chunk(frame.chunkIndex, frame.totalChunks, bytes(payload))
            yield frame


class StateRecorder:

    def __init__(self, session):
        self.states = []
        self.progress = []
        session.stateChanged.connect(self.onState)
        session.progress.connect(self.onProgress)

    def onState(self, session, state, **kwargs):
        self.states.append(state)

    def onProgress(self, session, transferred, total, **kwargs):
        self.progress.append((transferred, total))


class StagedTransferTest(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = ManualClock()
        self.store = TransientStore(clock=self.clock)
        self.config = TransferConfig(chunkSize=1024, ttl=60, origin=ORIGIN)
        self.orchestrator = TransferOrchestrator(self.config, store=self.store)

    async def asyncTearDown(self):
        await self.orchestrator.close()

    async def testRoundTrip(self):
        data = os.urandom(5000)

        sender = SenderSession(TransferMode.STAGED)
        senderStates = StateRecorder(sender)
        sender = await self.orchestrator.share(data, 'notes.txt', session=sender)

        self.assertEqual(sender.state, TransferState.LINK_READY, sender.reason)
        self.assertEqual(
            senderStates.states, [TransferState.ENCRYPTING, TransferState.STAGING, TransferState.LINK_READY]
        )
        self.assertTrue(sender.link.startswith(ORIGIN + '/download/'))
        self.assertEqual(sender.descriptor.locator, StagedLocator())
        self.assertEqual(sender.descriptor.originalType, 'text/plain')
        self.assertIsNone(sender.error)

        receiver = ReceiverSession()
        receiverStates = StateRecorder(receiver)
        receiver = await self.orchestrator.receive(sender.link, session=receiver)

        self.assertEqual(receiver.state, TransferState.DELIVERED, receiver.reason)
        self.assertEqual(receiverStates.states, [
            TransferState.RESOLVING, TransferState.TRANSFERRING, TransferState.DECRYPTING, TransferState.DELIVERED
        ])
        self.assertEqual(receiver.delivery.plaintext, data)
        self.assertEqual(receiver.delivery.name, 'notes.txt')
        self.assertEqual(receiver.delivery.size, 5000)
        self.assertEqual(receiver.delivery.mimeType, 'text/plain')

        encryptedSize = len(data) + 16
        self.assertEqual(len(receiverStates.progress), 5)
        self.assertEqual(receiverStates.progress[-1], (encryptedSize, encryptedSize))

    async def testSecondRedeemFails(self):
        sender = await self.orchestrator.share(b'once', 'once.bin')

        first = await self.orchestrator.receive(sender.link)
        second = await self.orchestrator.receive(sender.link)

        self.assertEqual(first.state, TransferState.DELIVERED)
        self.assertEqual(second.state, TransferState.FAILED)
        self.assertEqual(second.category, 'already-consumed')
        self.assertEqual(second.reason, 'This link has already been used.')
        self.assertIsNone(second.delivery)

    async def testConcurrentRedeemHasOneWinner(self):
        sender = await self.orchestrator.share(os.urandom(2048), 'race.bin')

        sessions = await asyncio.gather(*(self.orchestrator.receive(sender.link) for _ in range(2)))

        states = sorted(session.state.value for session in sessions)
        self.assertEqual(states, ['delivered', 'failed'])
        loser = next(session for session in sessions if session.failed)
        self.assertEqual(loser.category, 'already-consumed')

    async def testExpiredLink(self):
        sender = await self.orchestrator.share(b'late', 'late.bin')

        self.clock.advance(61)
        receiver = await self.orchestrator.receive(sender.link)

        self.assertEqual(receiver.state, TransferState.FAILED)
        self.assertEqual(receiver.category, 'expired')

    async def testUsesInjectedStore(self):
        self.assertIs(self.orchestrator.store, self.store)
        self.assertIs(self.orchestrator.clock, self.clock)

        sender = await self.orchestrator.share(b'kept', 'kept.bin')

        self.assertIn(sender.transferId, self.store)

    async def testUnknownTransfer(self):
        sender = await self.orchestrator.share(b'gone', 'gone.bin')
        self.store.discard(sender.transferId)

        receiver = await self.orchestrator.receive(sender.link)
        self.assertEqual(receiver.category, 'not-found')

    async def testInvalidLinks(self):
        for link in ('', 'https://share.example.com/download/!!!', 'https://share.example.com/other/abc'):
            receiver = ReceiverSession()
            states = StateRecorder(receiver)

            receiver = await self.orchestrator.receive(link, session=receiver)

            self.assertEqual(receiver.category, 'invalid-link', link)
            self.assertEqual(states.states, [TransferState.RESOLVING, TransferState.FAILED])

    async def testDeeplyNestedLink(self):
        token = b64urlEncode(zlib.compress(b'[' * 200000, 9))

        receiver = await self.orchestrator.receive(f'{ORIGIN}/download/{token}')

        self.assertEqual(receiver.state, TransferState.FAILED)
        self.assertEqual(receiver.category, 'invalid-link')

    async def testMalformedKey(self):
        sender = await self.orchestrator.share(b'payload', 'payload.bin')
        descriptor = dataclasses.replace(sender.descriptor, key={'kty': 'oct', 'k': 'c2hvcnQ'})

        receiver = await self.orchestrator.receive(self.orchestrator.codec.encode(descriptor))

        self.assertEqual(receiver.category, 'malformed-key')
        self.assertIn(sender.transferId, self.store) # never fetched

    async def testWrongKey(self):
        sender = await self.orchestrator.share(b'payload', 'payload.bin')
        otherKey = self.orchestrator.crypto.exportKey(self.orchestrator.crypto.generateKey())
        descriptor = dataclasses.replace(sender.descriptor, key=otherKey)

        receiver = await self.orchestrator.receive(self.orchestrator.codec.encode(descriptor))

        self.assertEqual(receiver.category, 'authentication-failed')
        self.assertIsNone(receiver.delivery)

    async def testTamperedCiphertext(self):
        orchestrator = TransferOrchestrator(
            self.config, store=self.store, staging=TamperingStaging(self.store, self.config.chunkSize)
        )
        sender = await orchestrator.share(os.urandom(3000), 'tampered.bin')

        receiver = await orchestrator.receive(sender.link)

        self.assertEqual(receiver.state, TransferState.FAILED)
        self.assertEqual(receiver.category, 'authentication-failed')
        self.assertIsNone(receiver.delivery)

    async def testEmptyFile(self):
        sender = await self.orchestrator.share(b'', 'empty.txt', mimeType='text/plain')
        receiver = await self.orchestrator.receive(sender.link)

        self.assertEqual(receiver.state, TransferState.DELIVERED, receiver.reason)
        self.assertEqual(receiver.delivery.plaintext, b'')
        self.assertEqual(list(receiver.delivery.iterChunks()), [])

    async def testFailedSessionIsFinal(self):
        receiver = await self.orchestrator.receive('nonsense/download/x')

        self.assertTrue(receiver.finished)
        with self.assertRaises(RuntimeError):
            receiver.transition(TransferState.RESOLVING)
        with self.assertRaises(RuntimeError):
            receiver.fail(receiver.error)

    async def testOwnedStoreIsClosed(self):
        orchestrator = TransferOrchestrator(TransferConfig(origin=ORIGIN))
        sender = await orchestrator.share(b'bye', 'bye.bin')
        self.assertEqual(len(orchestrator.store), 1)

        await orchestrator.close()

        self.assertEqual(len(orchestrator.store), 0)
        self.assertNotIn(sender.transferId, orchestrator.store)


class DirectTransferTest(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.config = TransferConfig(mode=TransferMode.DIRECT, chunkSize=512, origin=ORIGIN, queueSize=4)
        self.factory = MemoryChannelFactory(queueSize=self.config.queueSize)
        self.orchestrator = TransferOrchestrator(self.config, channelFactory=self.factory)

    async def asyncTearDown(self):
        await self.orchestrator.close()

    async def testStreamToPeer(self):
        data = os.urandom(10000)

        sender = await self.orchestrator.share(data, 'movie.bin')
        self.assertEqual(sender.state, TransferState.LINK_READY, sender.reason)
        self.assertIsInstance(sender.descriptor.locator, OfferLocator)

        senderProgress = StateRecorder(sender)
        receiver = await self.orchestrator.receive(sender.link)

        self.assertEqual(receiver.state, TransferState.DELIVERED, receiver.reason)
        self.assertEqual(receiver.delivery.plaintext, data)
        self.assertEqual(receiver.delivery.name, 'movie.bin')

        self.assertTrue(await sender.waitStreamed(timeout=5))
        self.assertIsNone(sender.streamError)
        self.assertEqual(senderProgress.progress[-1], (len(data) + 16, len(data) + 16))

    async def testOfferRedeemedOnce(self):
        sender = await self.orchestrator.share(b'only once', 'once.bin')

        first = await self.orchestrator.receive(sender.link)
        second = await self.orchestrator.receive(sender.link)

        self.assertEqual(first.state, TransferState.DELIVERED)
        self.assertEqual(second.category, 'already-consumed')

    async def testExpiredOfferIsRefused(self):
        clock = ManualClock()
        config = dataclasses.replace(self.config, ttl=60)
        orchestrator = TransferOrchestrator(config, store=TransientStore(clock=clock), channelFactory=self.factory)
        try:
            sender = await orchestrator.share(b'too late', 'late.bin')
            clock.advance(61)

            receiver = await orchestrator.receive(sender.link)

            self.assertEqual(receiver.state, TransferState.FAILED)
            self.assertEqual(receiver.category, 'expired')
            self.assertFalse(await sender.waitStreamed(timeout=5))

            again = await orchestrator.receive(sender.link)
            self.assertEqual(again.category, 'expired')
        finally:
            await orchestrator.close()

    async def testDirectModeNeedsChannel(self):
        orchestrator = TransferOrchestrator(self.config)
        try:
            sender = await orchestrator.share(b'data', 'data.bin')
            self.assertEqual(sender.state, TransferState.FAILED)
            self.assertEqual(sender.category, 'channel-failure')
            self.assertIsNone(sender.link)
        finally:
            await orchestrator.close()

    async def testDirectLinkNeedsChannel(self):
        sender = await self.orchestrator.share(b'data', 'data.bin')

        orchestrator = TransferOrchestrator(TransferConfig(origin=ORIGIN))
        try:
            receiver = await orchestrator.receive(sender.link)
        finally:
            await orchestrator.close()

        self.assertEqual(receiver.category, 'channel-failure')

    async def testCloseCancelsPendingStreams(self):
        sender = await self.orchestrator.share(b'never read', 'never.bin')

        await self.orchestrator.close()

        self.assertTrue(sender.streamTask.done())


class DeliveryTest(unittest.TestCase):

    def testIterChunks(self):
        delivery = Delivery(b'abcdefghij', 'letters.txt', 10, 'text/plain')

        self.assertEqual(list(delivery.iterChunks(4)), [b'abcd', b'efgh', b'ij'])
        self.assertEqual(b''.join(delivery.iterChunks(3)), b'abcdefghij')
        with self.assertRaises(ValueError):
            list(delivery.iterChunks(0))

    def testReprHidesContent(self):
        delivery = Delivery(b'secret-bytes', 'secret.txt', 12, 'text/plain')
        self.assertNotIn('secret-bytes', repr(delivery))


if __name__ == '__main__':
    unittest.main()
