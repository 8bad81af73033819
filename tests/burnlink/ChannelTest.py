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
import base64
import os
import unittest

from burnlink.Channel import LocalStaging, MemoryChannelFactory, envelopeFromAssembler, framesForEnvelope
from burnlink.Descriptor import OfferLocator, StagedLocator, TransferDescriptor
from burnlink.Encryption import CipherEnvelope, CryptoService
from burnlink.Errors import (
    AlreadyConsumedError, ChannelFailureError, ProtocolViolationError, TransferNotFoundError
)
from burnlink.Framing import Frame, FrameAssembler, reassemble
from burnlink.Store import ManualClock, TransientStore


def makeDescriptor(crypto, clock, size=100):
    return TransferDescriptor(
        transferId=crypto.generateId(),
        key=crypto.exportKey(crypto.generateKey()),
        locator=StagedLocator(),
        originalName='photo.jpg',
        originalSize=size,
        originalType='image/jpeg',
        createdAt=int(clock.now() * 1000),
    )


class EnvelopeFramingTest(unittest.TestCase):

    def setUp(self):
        self.crypto = CryptoService()
        self.clock = ManualClock()

    def testEnvelopeSurvivesFraming(self):
        key = self.crypto.generateKey()
        envelope = self.crypto.encrypt(os.urandom(100), key)
        descriptor = makeDescriptor(self.crypto, self.clock)

        assembler = FrameAssembler()
        for frame in framesForEnvelope(envelope, descriptor, chunkSize=16):
            assembler.feed(frame)

        self.assertEqual(assembler.info['name'], 'photo.jpg')
        self.assertEqual(assembler.info['type'], 'image/jpeg')
        self.assertEqual(assembler.info['size'], 100)
        self.assertEqual(assembler.info['encryptedSize'], len(envelope))
        self.assertEqual(envelopeFromAssembler(assembler), envelope)

    def testRelayedFramesOmitFileInfo(self):
        envelope = CipherEnvelope(b'c' * 40, b'n' * 12)
        frames = list(framesForEnvelope(envelope, makeDescriptor(self.crypto, self.clock), 16, includeFileInfo=False))

        self.assertNotIn('name', frames[0].data)
        self.assertNotIn('type', frames[0].data)
        self.assertEqual(reassemble(frames), envelope.ciphertext)

    def testInfoWithoutUsableIv(self):
        for iv in (None, '***', base64.b64encode(b'short').decode()):
            metadata = {'totalChunks': 0}
            if iv is not None:
                metadata['iv'] = iv

            assembler = FrameAssembler()
            assembler.feed(Frame.info(metadata))
            assembler.feed(Frame.complete())

            with self.assertRaises(ProtocolViolationError, msg=repr(iv)):
                envelopeFromAssembler(assembler)


class LocalStagingTest(unittest.TestCase):

    def testStageAndFetchOnce(self):
        crypto = CryptoService()
        clock = ManualClock()
        store = TransientStore(clock=clock)
        staging = LocalStaging(store, chunkSize=32, relay='http://127.0.0.1:9000')

        envelope = crypto.encrypt(os.urandom(100), crypto.generateKey())
        descriptor = makeDescriptor(crypto, clock)

        locator = staging.stage(descriptor, envelope, ttl=60)
        self.assertEqual(locator, StagedLocator('http://127.0.0.1:9000'))

        assembler = FrameAssembler()
        for frame in staging.fetch(descriptor.transferId):
            assembler.feed(frame)
        self.assertEqual(envelopeFromAssembler(assembler), envelope)

        with self.assertRaises(AlreadyConsumedError):
            staging.fetch(descriptor.transferId)


class MemoryChannelTest(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.factory = MemoryChannelFactory(queueSize=4)

    async def asyncTearDown(self):
        await self.factory.close()

    async def connect(self):
        offer = await self.factory.createOffer('f' * 32)
        receiver = await self.factory.acceptOffer(OfferLocator(offer.offer, offer.peerId))
        return offer.channel, receiver

    async def testMessagesFlowBothWays(self):
        sender, receiver = await self.connect()
        await sender.open(1)
        await receiver.open(1)

        await sender.send(b'hello')
        await receiver.send(b'ack')

        self.assertEqual(await receiver.receive(), b'hello')
        self.assertEqual(await sender.receive(), b'ack')

    async def testOfferAcceptedOnce(self):
        offer = await self.factory.createOffer('f' * 32)
        locator = OfferLocator(offer.offer, offer.peerId)

        await self.factory.acceptOffer(locator)
        with self.assertRaises(AlreadyConsumedError):
            await self.factory.acceptOffer(locator)

        with self.assertRaises(TransferNotFoundError):
            await self.factory.acceptOffer(OfferLocator(offer.offer, 'unknown-peer'))

    async def testAdmissionRefusesDeadOffer(self):
        def admission(transferId):
            raise TransferNotFoundError(f"{transferId} is gone")

        offer = await self.factory.createOffer('f' * 32, admission=admission)

        with self.assertRaises(TransferNotFoundError):
            await self.factory.acceptOffer(OfferLocator(offer.offer, offer.peerId))
        with self.assertRaises(ChannelFailureError):
            await offer.channel.open(timeout=1)

    async def testOpenTimesOutWithoutPeer(self):
        offer = await self.factory.createOffer('f' * 32)

        with self.assertRaises(ChannelFailureError):
            await offer.channel.open(timeout=0.05)

    async def testBackpressure(self):
        sender, receiver = await self.connect()

        async def sendAll():
            for index in range(10):
                await sender.send(bytes([index]))

        task = asyncio.ensure_future(sendAll())
        await asyncio.sleep(0.05)
        self.assertFalse(task.done()) # queue holds 4

        received = [await receiver.receive() for _ in range(10)]
        await asyncio.wait_for(task, 1)
        self.assertEqual(received, [bytes([index]) for index in range(10)])

    async def testPeerCloseIsVisible(self):
        sender, receiver = await self.connect()

        await receiver.close()

        with self.assertRaises(ChannelFailureError):
            await sender.receive()
        with self.assertRaises(ChannelFailureError):
            await sender.send(b'late')
        with self.assertRaises(ChannelFailureError):
            await receiver.receive()

    async def testCloseReleasesBlockedSender(self):
        factory = MemoryChannelFactory(queueSize=1)
        offer = await factory.createOffer('f' * 32)
        receiver = await factory.acceptOffer(OfferLocator(offer.offer, offer.peerId))
        sender = offer.channel

        async def sendAll():
            for index in range(5):
                await sender.send(bytes([index]))

        task = asyncio.ensure_future(sendAll())
        await asyncio.sleep(0.05)
        self.assertFalse(task.done())

        await receiver.close()
        with self.assertRaises(ChannelFailureError):
            await asyncio.wait_for(task, 1)

    async def testReceiverDrainsAfterSenderCloses(self):
        sender, receiver = await self.connect()

        await sender.send(b'one')
        await sender.send(b'two')
        await sender.close()

        self.assertEqual(await receiver.receive(), b'one')
        self.assertEqual(await receiver.receive(), b'two')
        with self.assertRaises(ChannelFailureError):
            await receiver.receive()


if __name__ == '__main__':
    unittest.main()
