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
import uuid

from typing import Callable, Dict, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from burnlink.Channel import ChannelFactory, ChannelOffer, PeerChannel
from burnlink.Descriptor import OfferLocator
from burnlink.Errors import AlreadyConsumedError, ChannelFailureError, TransferNotFoundError
from burnlink.Kernel import getLogger, shortId
from burnlink.Settings import CHANNEL_BUFFER_THRESHOLD, CHANNEL_QUEUE_SIZE, ICE_SERVERS

logger = getLogger(__name__)

DATA_CHANNEL_LABEL = 'burnlink'

_CLOSED = object()


class DataChannelPeer(PeerChannel):
    """PeerChannel over an aiortc RTCDataChannel

    Inbound messages land in a bounded queue; outbound sends pause while the
    data channel's buffered amount is above the threshold.
    """

    def __init__(self, peerId, pc: RTCPeerConnection, queueSize=CHANNEL_QUEUE_SIZE, bufferThreshold=None):
        self.peerId = peerId
        self.pc = pc
        self.dc = None
        self.bufferThreshold = CHANNEL_BUFFER_THRESHOLD if bufferThreshold is None else bufferThreshold

        self._inbound = asyncio.Queue(queueSize)
        self._opened = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = False

        @pc.on("connectionstatechange")
        async def _onConnectionStateChange():
            logger.debug(f"[WEBRTC] Peer {shortId(self.peerId)} connection state: {pc.connectionState}")
            if pc.connectionState in ('failed', 'closed'):
                self._markClosed()

    def attach(self, dc):
        self.dc = dc
        dc.bufferedAmountLowThreshold = self.bufferThreshold

        @dc.on("open")
        def _onOpen():
            self._opened.set()

        @dc.on("message")
        async def _onMessage(message):
            if isinstance(message, str):
                message = message.encode('utf-8')
            await self._inbound.put(message)

        @dc.on("bufferedamountlow")
        def _onBufferedAmountLow():
            self._drained.set()

        @dc.on("close")
        def _onClose():
            self._markClosed()

        if dc.readyState == 'open':
            self._opened.set()

    def _markClosed(self):
        if self._closed:
            return
        self._closed = True
        self._opened.set()
        self._drained.set()
        try:
            self._inbound.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Reader is behind; it will find _closed once the queue drains.
            pass

    async def open(self, timeout: float = None):
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            raise ChannelFailureError(f"Peer {shortId(self.peerId)} did not connect in time")

        if self._closed:
            raise ChannelFailureError("Connection failed before the data channel opened")

    async def send(self, message: bytes):
        if self._closed or self.dc is None or self.dc.readyState != 'open':
            raise ChannelFailureError("Data channel is not open")

        # Wait until the buffer is acceptable for the next message
        while self.dc.bufferedAmount > self.bufferThreshold:
            self._drained.clear()
            await self._drained.wait()
            if self._closed:
                raise ChannelFailureError("Data channel closed while sending")

        self.dc.send(bytes(message))

    async def receive(self) -> bytes:
        if self._closed and self._inbound.empty():
            raise ChannelFailureError("Data channel closed by peer")

        message = await self._inbound.get()
        if message is _CLOSED:
            self._inbound.put_nowait(_CLOSED)
            raise ChannelFailureError("Data channel closed by peer")
        return message

    async def close(self):
        self._markClosed()
        await self.pc.close()


class WebRTCChannelFactory(ChannelFactory):
    """
    Direct transport over WebRTC data channels (aiortc).

    aiortc gathers every ICE candidate during setLocalDescription, so the
    offer SDP carried in the link is complete and no trickle exchange is
    needed. The receiver's answer travels back through answerSender (the CLI
    posts it to the sender's relay /answer endpoint, which calls submitAnswer).
    """

    def __init__(
        self,
        iceServers=None,
        answerSender: Optional[Callable[[OfferLocator, dict], None]] = None,
        queueSize: int = CHANNEL_QUEUE_SIZE,
    ):
        super().__init__()
        self.iceServers = [RTCIceServer(urls=url) for url in (ICE_SERVERS if iceServers is None else iceServers)]
        self.answerSender = answerSender
        self.queueSize = queueSize

        self.loop = None
        self._pending: Dict[str, DataChannelPeer] = {}
        self._answered = set()
        self._channels = set()

    def _createPeerConnection(self):
        return RTCPeerConnection(configuration=RTCConfiguration(iceServers=self.iceServers))

    async def createOffer(self, transferId, admission=None):
        self.loop = asyncio.get_running_loop()
        peerId = uuid.uuid4().hex

        pc = self._createPeerConnection()
        channel = DataChannelPeer(peerId, pc, self.queueSize)
        channel.attach(pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))

        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)

        self._pending[peerId] = channel
        self._channels.add(channel)
        self._registerOffer(peerId, transferId, admission)
        logger.debug(f"[WEBRTC] Offer {shortId(peerId)} created for {shortId(transferId)}")

        return ChannelOffer(peerId, {'type': pc.localDescription.type, 'sdp': pc.localDescription.sdp}, channel)

    async def setAnswer(self, peerId: str, answer: dict):
        """Complete signaling for a pending offer; each offer accepts one answer"""
        if peerId in self._answered:
            raise AlreadyConsumedError()
        await self._admit(peerId)

        channel = self._pending.pop(peerId, None)
        if channel is None:
            raise TransferNotFoundError(f"No pending offer for peer {shortId(peerId)}")

        self._answered.add(peerId)
        self._admissions.pop(peerId, None)
        try:
            await channel.pc.setRemoteDescription(RTCSessionDescription(sdp=answer['sdp'], type=answer['type']))
        except ValueError as e:
            await channel.close()
            raise ChannelFailureError(f"Invalid answer from peer {shortId(peerId)}: {e}")

        logger.info(f"[WEBRTC] Peer {shortId(peerId)} answered")

    async def _dropOffer(self, peerId):
        channel = self._pending.pop(peerId, None)
        if channel is not None:
            await channel.close()

    def submitAnswer(self, data: dict, timeout=15):
        """Thread-safe setAnswer for the relay server's request threads"""
        if self.loop is None:
            raise TransferNotFoundError("No offer has been created")

        fut = asyncio.run_coroutine_threadsafe(
            self.setAnswer(data['peerId'], {'type': data['type'], 'sdp': data['sdp']}), self.loop
        )
        return fut.result(timeout=timeout)

    async def acceptOffer(self, locator: OfferLocator):
        if self.answerSender is None:
            raise ChannelFailureError("No way to deliver an answer to the sender")

        pc = self._createPeerConnection()
        channel = DataChannelPeer(locator.peerId, pc, self.queueSize)
        self._channels.add(channel)

        @pc.on("datachannel")
        def _onDataChannel(dc):
            channel.attach(dc)

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=locator.offer['sdp'], type=locator.offer['type']))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except ValueError as e:
            await channel.close()
            raise ChannelFailureError(f"Unusable offer in link: {e}")

        localDescription = {'type': pc.localDescription.type, 'sdp': pc.localDescription.sdp}
        try:
            await asyncio.get_running_loop().run_in_executor(None, self.answerSender, locator, localDescription)
        except Exception:
            await channel.close()
            raise

        return channel

    async def close(self):
        channels = list(self._channels)
        await asyncio.gather(*[channel.close() for channel in channels], return_exceptions=True)
        self._channels.clear()
        self._pending.clear()
        self._admissions.clear()
