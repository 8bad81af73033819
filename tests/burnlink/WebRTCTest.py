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
import unittest

from burnlink.Descriptor import OfferLocator
from burnlink.Errors import AlreadyConsumedError, ChannelFailureError, TransferExpiredError, TransferNotFoundError
from burnlink.Settings import TransferConfig, TransferMode
from burnlink.Store import ManualClock, TransientStore
from burnlink.Transfer import TransferOrchestrator, TransferState
from burnlink.WebRTC import WebRTCChannelFactory


class WebRTCTransferTest(unittest.IsolatedAsyncioTestCase):
    """Two aiortc peers on loopback, host candidates only"""

    async def asyncSetUp(self):
        self.senderFactory = WebRTCChannelFactory(iceServers=[], queueSize=8)
        self.receiverFactory = WebRTCChannelFactory(iceServers=[], answerSender=self.sendAnswer, queueSize=8)

        config = TransferConfig(mode=TransferMode.DIRECT, chunkSize=8192, signaling='http://127.0.0.1:1')
        self.sender = TransferOrchestrator(config, channelFactory=self.senderFactory)
        self.receiver = TransferOrchestrator(TransferConfig(openTimeout=20), channelFactory=self.receiverFactory)

    async def asyncTearDown(self):
        await self.receiver.close()
        await self.sender.close()

    def sendAnswer(self, locator, answer):
        # Runs in an executor thread, like an HTTP post to the sender's relay.
        self.senderFactory.submitAnswer({'peerId': locator.peerId, **answer})

    async def testStreamOverDataChannel(self):
        data = os.urandom(300 * 1024)

        sender = await self.sender.share(data, 'clip.mp4')
        self.assertEqual(sender.state, TransferState.LINK_READY, sender.reason)
        locator = sender.descriptor.locator
        self.assertIsInstance(locator, OfferLocator)
        self.assertEqual(locator.offer['type'], 'offer')
        self.assertIn('a=candidate', locator.offer['sdp'])

        receiver = await self.receiver.receive(sender.link)

        self.assertEqual(receiver.state, TransferState.DELIVERED, receiver.reason)
        self.assertEqual(receiver.delivery.plaintext, data)
        self.assertEqual(receiver.delivery.mimeType, 'video/mp4')
        self.assertTrue(await sender.waitStreamed(timeout=60))

        with self.assertRaises(AlreadyConsumedError):
            await self.senderFactory.setAnswer(locator.peerId, {'type': 'answer', 'sdp': ''})

    async def testUnknownPeerAnswer(self):
        await self.sender.share(b'data', 'data.bin')

        with self.assertRaises(TransferNotFoundError):
            await self.senderFactory.setAnswer('0' * 32, {'type': 'answer', 'sdp': ''})

    async def testExpiredOfferRefusesAnswer(self):
        clock = ManualClock()
        factory = WebRTCChannelFactory(iceServers=[])
        config = TransferConfig(mode=TransferMode.DIRECT, ttl=60, signaling='http://127.0.0.1:1')
        orchestrator = TransferOrchestrator(config, store=TransientStore(clock=clock), channelFactory=factory)
        try:
            sender = await orchestrator.share(b'data', 'data.bin')
            peerId = sender.descriptor.locator.peerId
            clock.advance(61)

            with self.assertRaises(TransferExpiredError):
                await factory.setAnswer(peerId, {'type': 'answer', 'sdp': ''})
            self.assertFalse(await sender.waitStreamed(timeout=10))
        finally:
            await orchestrator.close()

    async def testAnswerBeforeAnyOffer(self):
        with self.assertRaises(TransferNotFoundError):
            WebRTCChannelFactory(iceServers=[]).submitAnswer({'peerId': 'x', 'type': 'answer', 'sdp': ''})

    async def testReceiverNeedsAnswerPath(self):
        sender = await self.sender.share(b'data', 'data.bin')

        orchestrator = TransferOrchestrator(channelFactory=WebRTCChannelFactory(iceServers=[]))
        try:
            receiver = await orchestrator.receive(sender.link)
        finally:
            await orchestrator.close()

        self.assertEqual(receiver.category, 'channel-failure')

    async def testUndeliverableAnswer(self):
        def failToSend(locator, answer):
            raise ChannelFailureError("Failed to reach sender")

        sender = await self.sender.share(b'data', 'data.bin')

        orchestrator = TransferOrchestrator(channelFactory=WebRTCChannelFactory(iceServers=[], answerSender=failToSend))
        try:
            receiver = await orchestrator.receive(sender.link)
        finally:
            await orchestrator.close()

        self.assertEqual(receiver.category, 'channel-failure')


if __name__ == '__main__':
    unittest.main()
