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
Transport capabilities used by the transfer orchestrator.

Two shapes, chosen by configuration:

- StagingBackend ``{stage, fetch}`` for store-and-forward
- ChannelFactory ``{createOffer, acceptOffer}`` yielding PeerChannel
  ``{open, send, receive, close}`` for direct streaming

Both move the same frames; see framesForEnvelope / envelopeFromAssembler.
"""

import asyncio
import base64
import binascii
import uuid

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterator

from burnlink.Descriptor import OfferLocator, StagedLocator, TransferDescriptor
from burnlink.Encryption import NONCE_SIZE, CipherEnvelope
from burnlink.Errors import (
    AlreadyConsumedError, ChannelFailureError, ProtocolViolationError, TransferError, TransferNotFoundError
)
from burnlink.Framing import Frame, FrameAssembler, iterFrames
from burnlink.Kernel import getLogger, shortId
from burnlink.Settings import CHANNEL_QUEUE_SIZE, TRANSFER_CHUNK_SIZE
from burnlink.Store import StoredTransfer, TransientStore

logger = getLogger(__name__)

# ============================================================================
# Envelope <-> frames
# ============================================================================


def framesForEnvelope(
    envelope: CipherEnvelope,
    descriptor: TransferDescriptor = None,
    chunkSize: int = TRANSFER_CHUNK_SIZE,
    includeFileInfo: bool = True
) -> Iterator[Frame]:
    """Frame an envelope; the nonce travels in the info frame as 'iv'

    Relayed frames leave out name and type, the link already carries them.
    """
    metadata = {'iv': base64.b64encode(envelope.nonce).decode()}
    if descriptor is not None:
        metadata['size'] = descriptor.originalSize
        if includeFileInfo:
            metadata['name'] = descriptor.originalName
            metadata['type'] = descriptor.originalType

    return iterFrames(envelope.ciphertext, chunkSize, metadata)


def envelopeFromAssembler(assembler: FrameAssembler) -> CipherEnvelope:
    ciphertext = assembler.result()

    iv = assembler.info.get('iv')
    if not isinstance(iv, str):
        raise ProtocolViolationError("Info frame carries no iv")

    try:
        nonce = base64.b64decode(iv, validate=True)
    except (binascii.Error, ValueError):
        raise ProtocolViolationError("Info frame iv is not base64")

    if len(nonce) != NONCE_SIZE:
        raise ProtocolViolationError(f"Info frame iv must be {NONCE_SIZE} bytes, got {len(nonce)}")

    return CipherEnvelope(ciphertext, nonce)


# ============================================================================
# Store-and-forward
# ============================================================================


class StagingBackend(ABC):
    """Where staged envelopes live until their single retrieval"""

    @abstractmethod
    def stage(self, descriptor: TransferDescriptor, envelope: CipherEnvelope, ttl) -> StagedLocator:
        pass

    @abstractmethod
    def fetch(self, transferId: str) -> Iterator[Frame]:
        """Consume the transfer and return its frames, raises the store lifecycle errors"""
        pass


class LocalStaging(StagingBackend):
    """Staging in a TransientStore owned by this process

    relay is the URL the store is published under (an embedded relay server),
    None when only this session can redeem the link.
    """

    def __init__(self, store: TransientStore, chunkSize: int = TRANSFER_CHUNK_SIZE, relay: str = None):
        self.store = store
        self.chunkSize = chunkSize
        self.relay = relay

    def stage(self, descriptor, envelope, ttl):
        record = StoredTransfer(descriptor, envelope, createdAt=descriptor.createdAt / 1000.0)
        self.store.stage(descriptor.transferId, record, ttl)
        return StagedLocator(self.relay)

    def fetch(self, transferId):
        record = self.store.fetchAndConsume(transferId)
        return framesForEnvelope(record.envelope, record.descriptor, self.chunkSize)


# ============================================================================
# Direct channels
# ============================================================================


class PeerChannel(ABC):
    """Message channel between exactly two peers"""

    peerId = None

    @abstractmethod
    async def open(self, timeout: float = None):
        """Wait until messages can flow, raises ChannelFailureError"""
        pass

    @abstractmethod
    async def send(self, message: bytes):
        """Send one message, waits while the channel buffer is full"""
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        """Next inbound message, raises ChannelFailureError once the channel is closed"""
        pass

    @abstractmethod
    async def close(self):
        pass


@dataclass
class ChannelOffer:
    peerId: str
    offer: dict # {type, sdp}
    channel: PeerChannel


class ChannelFactory(ABC):
    """Signaling side of the direct transport"""

    def __init__(self):
        self._admissions = {}

    @abstractmethod
    async def createOffer(self, transferId: str, admission: Callable[[str], object] = None) -> ChannelOffer:
        """Open an offer; admission(transferId) is consulted before its answer is accepted"""
        pass

    def _registerOffer(self, peerId, transferId, admission):
        if admission is not None:
            self._admissions[peerId] = (transferId, admission)

    async def _admit(self, peerId):
        """Raise the link's terminal error and drop the offer once the sender can no longer serve it"""
        entry = self._admissions.get(peerId)
        if entry is None:
            return

        transferId, admission = entry
        try:
            admission(transferId)
        except TransferError as e:
            logger.info(f"[CHANNEL] Refusing answer for {shortId(transferId)}: {e.category}")
            await self._dropOffer(peerId)
            raise

    async def _dropOffer(self, peerId):
        pass

    @abstractmethod
    async def acceptOffer(self, locator: OfferLocator) -> PeerChannel:
        """Answer an offer; a second answer for the same offer raises AlreadyConsumedError"""
        pass

    async def close(self):
        pass


_CLOSED = object()


class MemoryChannel(PeerChannel):
    """One end of an in-process channel backed by bounded asyncio queues"""

    def __init__(self, peerId, inbound: asyncio.Queue, outbound: asyncio.Queue):
        self.peerId = peerId
        self._inbound = inbound
        self._outbound = outbound
        self._opened = asyncio.Event()
        self._closed = False
        self.remote = None

    async def open(self, timeout: float = None):
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            raise ChannelFailureError(f"Peer {shortId(self.peerId)} did not connect in time")

        if self._closed:
            raise ChannelFailureError("Channel closed before it opened")

    async def send(self, message: bytes):
        if self._closed or (self.remote is not None and self.remote._closed):
            raise ChannelFailureError("Channel is closed")
        await self._outbound.put(bytes(message))

    def _peerClosed(self):
        return self.remote is not None and self.remote._closed

    async def receive(self) -> bytes:
        if self._closed:
            raise ChannelFailureError("Channel is closed")
        if self._inbound.empty() and self._peerClosed():
            raise ChannelFailureError("Channel closed by peer")

        message = await self._inbound.get()
        if message is _CLOSED:
            # Let other readers see the close too.
            self._inbound.put_nowait(_CLOSED)
            raise ChannelFailureError("Channel closed by peer")
        return message

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._opened.set()

        # Unread messages are moot; draining also releases a peer blocked on a full queue.
        while not self._inbound.empty():
            self._inbound.get_nowait()

        # A full outbound queue is drained by the peer, which then sees _peerClosed().
        if not self._outbound.full():
            self._outbound.put_nowait(_CLOSED)


class MemoryChannelFactory(ChannelFactory):
    """In-process signaling, offers are redeemable once"""

    OFFER_TYPE = 'memory'

    def __init__(self, queueSize: int = CHANNEL_QUEUE_SIZE):
        super().__init__()
        self.queueSize = queueSize
        self._pending = {}
        self._answered = set()

    async def createOffer(self, transferId, admission=None):
        peerId = uuid.uuid4().hex
        toReceiver = asyncio.Queue(self.queueSize)
        toSender = asyncio.Queue(self.queueSize)

        senderEnd = MemoryChannel(peerId, inbound=toSender, outbound=toReceiver)
        receiverEnd = MemoryChannel(peerId, inbound=toReceiver, outbound=toSender)
        senderEnd.remote = receiverEnd
        receiverEnd.remote = senderEnd

        self._pending[peerId] = (senderEnd, receiverEnd)
        self._registerOffer(peerId, transferId, admission)
        logger.debug(f"[CHANNEL] Memory offer {shortId(peerId)} for {shortId(transferId)}")

        return ChannelOffer(peerId, {'type': self.OFFER_TYPE, 'sdp': ''}, senderEnd)

    async def acceptOffer(self, locator):
        if locator.peerId in self._answered:
            raise AlreadyConsumedError()
        await self._admit(locator.peerId)

        pair = self._pending.pop(locator.peerId, None)
        if pair is None:
            raise TransferNotFoundError(f"No pending offer for peer {shortId(locator.peerId)}")

        self._answered.add(locator.peerId)
        self._admissions.pop(locator.peerId, None)
        senderEnd, receiverEnd = pair
        senderEnd._opened.set()
        receiverEnd._opened.set()
        return receiverEnd

    async def _dropOffer(self, peerId):
        pair = self._pending.pop(peerId, None)
        if pair is not None:
            for end in pair:
                await end.close()

    async def close(self):
        for senderEnd, receiverEnd in self._pending.values():
            await senderEnd.close()
            await receiverEnd.close()
        self._pending.clear()
        self._admissions.clear()
