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
End-to-end transfer flow.

Sender:   Idle -> Encrypting -> Staging -> LinkReady
Receiver: Idle -> Resolving -> Transferring -> Decrypting -> Delivered

Both reach Failed from any non-terminal state. Failures never propagate out of
share()/receive(); the returned session carries the error and its category.
"""

import asyncio
import mimetypes

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from signalslot import Signal

from burnlink.Channel import LocalStaging, envelopeFromAssembler, framesForEnvelope
from burnlink.Descriptor import OfferLocator, ShareDescriptorCodec, StagedLocator, TransferDescriptor
from burnlink.Encryption import CryptoService
from burnlink.Errors import ChannelFailureError, IncompleteTransferError, TransferError
from burnlink.Framing import FrameAssembler, FrameType, packFrame, unpackFrame
from burnlink.Kernel import getLogger, shortId
from burnlink.Relay import RelayStaging
from burnlink.Settings import PEER_CLOSE_TIMEOUT, TRANSFER_CHUNK_SIZE, TransferConfig, TransferMode
from burnlink.Store import StoredTransfer, TransientStore

logger = getLogger(__name__)


class TransferState(Enum):
    IDLE = 'idle'
    ENCRYPTING = 'encrypting'
    STAGING = 'staging'
    LINK_READY = 'link-ready'
    RESOLVING = 'resolving'
    TRANSFERRING = 'transferring'
    DECRYPTING = 'decrypting'
    DELIVERED = 'delivered'
    FAILED = 'failed'


SENDER_TRANSITIONS = {
    TransferState.IDLE: {TransferState.ENCRYPTING},
    TransferState.ENCRYPTING: {TransferState.STAGING},
    TransferState.STAGING: {TransferState.LINK_READY},
}

RECEIVER_TRANSITIONS = {
    TransferState.IDLE: {TransferState.RESOLVING},
    TransferState.RESOLVING: {TransferState.TRANSFERRING},
    TransferState.TRANSFERRING: {TransferState.DECRYPTING},
    TransferState.DECRYPTING: {TransferState.DELIVERED},
}


class TransferSession:
    """State of one side of one transfer

    stateChanged(session, state) fires after every transition and
    progress(session, transferred, total) after every frame. Slots must accept
    **kwargs (signalslot).
    """

    TRANSITIONS = {}

    def __init__(self):
        self.state = TransferState.IDLE
        self.error: Optional[TransferError] = None
        self.transferId: Optional[str] = None

        self.stateChanged = Signal(args=['session', 'state'])
        self.progress = Signal(args=['session', 'transferred', 'total'])

    @property
    def failed(self):
        return self.state == TransferState.FAILED

    @property
    def finished(self):
        return self.state == TransferState.FAILED or self.state not in self.TRANSITIONS

    @property
    def category(self):
        return self.error.category if self.error else None

    @property
    def reason(self):
        """Human-readable failure, None unless Failed"""
        return self.error.userMessage if self.error else None

    def transition(self, state: TransferState):
        allowed = self.TRANSITIONS.get(self.state, set())
        if state not in allowed:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {state.value}")

        self.state = state
        logger.debug(f"[TRANSFER] {shortId(self.transferId)} -> {state.value}")
        self.stateChanged.emit(session=self, state=state)

    def fail(self, error: TransferError):
        if self.finished:
            raise RuntimeError(f"Cannot fail a finished transfer ({self.state.value})")

        self.error = error
        self.state = TransferState.FAILED
        logger.warning(f"[TRANSFER] {shortId(self.transferId)} failed ({error.category}): {error}")
        self.stateChanged.emit(session=self, state=TransferState.FAILED)

    def reportProgress(self, transferred, total):
        self.progress.emit(session=self, transferred=transferred, total=total)


class SenderSession(TransferSession):
    TRANSITIONS = SENDER_TRANSITIONS

    def __init__(self, mode: TransferMode):
        super().__init__()
        self.mode = mode
        self.link: Optional[str] = None
        self.descriptor: Optional[TransferDescriptor] = None

        # Direct mode only
        self.streamTask: Optional[asyncio.Task] = None
        self.streamError: Optional[TransferError] = None

    async def waitStreamed(self, timeout=None) -> bool:
        """Wait for a direct-mode stream to finish, True when the receiver got every frame"""
        if self.streamTask is None:
            return False
        return await asyncio.wait_for(asyncio.shield(self.streamTask), timeout)


@dataclass
class Delivery:
    """Decrypted file handed to the caller for local persistence"""
    plaintext: bytes = field(repr=False)
    name: str
    size: int
    mimeType: str

    def iterChunks(self, chunkSize: int = TRANSFER_CHUNK_SIZE) -> Iterator[bytes]:
        """Lazy, finite sequence of plaintext blocks; each call starts over"""
        if chunkSize <= 0:
            raise ValueError(f"chunkSize must be positive, got {chunkSize}")

        view = memoryview(self.plaintext)
        for start in range(0, len(view), chunkSize):
            yield bytes(view[start:start + chunkSize])


class ReceiverSession(TransferSession):
    TRANSITIONS = RECEIVER_TRANSITIONS

    def __init__(self):
        super().__init__()
        self.descriptor: Optional[TransferDescriptor] = None
        self.delivery: Optional[Delivery] = None


def guessMimeType(name):
    return mimetypes.guess_type(name)[0] or 'application/octet-stream'


class TransferOrchestrator:
    """Drives share and receive flows for one process

    The orchestrator keeps transfer ids only; staged records belong to the
    store (or the remote relay). Direct mode needs a ChannelFactory.
    """

    def __init__(
        self,
        config: TransferConfig = None,
        store: TransientStore = None,
        crypto: CryptoService = None,
        staging=None,
        channelFactory=None,
        codec: ShareDescriptorCodec = None,
    ):
        self.config = config or TransferConfig()
        self._ownsStore = store is None
        self.store = store if store is not None else TransientStore(defaultTtl=self.config.ttl)
        self.clock = self.store.clock
        self.crypto = crypto or CryptoService()
        self.codec = codec or ShareDescriptorCodec(self.config.origin)
        self.localStaging = LocalStaging(self.store, self.config.chunkSize)
        self.staging = staging or self._defaultStaging()
        self.channelFactory = channelFactory

        self._streams = set()

    def _defaultStaging(self):
        if self.config.relay:
            return RelayStaging(self.config.relay, self.config.chunkSize)
        return self.localStaging

    def stagingFor(self, locator: StagedLocator):
        """Staging backend able to redeem a staged locator"""
        if locator.relay is None:
            return self.localStaging
        if getattr(self.staging, 'relay', None) == locator.relay:
            return self.staging
        return RelayStaging(locator.relay, self.config.chunkSize)

    # ============================================================================
    # Sender
    # ============================================================================

    async def share(self, data: bytes, name: str, mimeType: str = None, session: SenderSession = None) -> SenderSession:
        """Encrypt and stage (or offer) data; pass a session to connect its signals beforehand"""
        session = session or SenderSession(self.config.mode)
        loop = asyncio.get_running_loop()

        try:
            session.transition(TransferState.ENCRYPTING)
            size = len(data)
            key = self.crypto.generateKey()
            envelope = await loop.run_in_executor(None, self.crypto.encrypt, data, key)
            del data

            session.transferId = self.crypto.generateId()
            descriptor = TransferDescriptor(
                transferId=session.transferId,
                key=self.crypto.exportKey(key),
                locator=StagedLocator(),
                originalName=name,
                originalSize=size,
                originalType=mimeType or guessMimeType(name),
                createdAt=int(self.clock.now() * 1000),
            )

            session.transition(TransferState.STAGING)
            if self.config.mode == TransferMode.STAGED:
                descriptor.locator = await loop.run_in_executor(
                    None, self.staging.stage, descriptor, envelope, self.config.ttl
                )
            else:
                descriptor.locator = await self._offer(session, descriptor, envelope)
            session.reportProgress(len(envelope), len(envelope))

            session.descriptor = descriptor
            session.link = self.codec.encode(descriptor)
            session.transition(TransferState.LINK_READY)
        except TransferError as e:
            session.fail(e)

        return session

    async def _offer(self, session, descriptor, envelope) -> OfferLocator:
        if self.channelFactory is None:
            raise ChannelFailureError("Direct mode needs a peer channel")

        # The local record gates streaming to a single peer and expires with the link.
        record = StoredTransfer(descriptor, envelope, createdAt=descriptor.createdAt / 1000.0)
        self.store.stage(descriptor.transferId, record, self.config.ttl)

        offer = await self.channelFactory.createOffer(descriptor.transferId, admission=self.store.peek)

        session.streamTask = asyncio.ensure_future(self._stream(session, offer.channel, descriptor.transferId))
        self._streams.add(session.streamTask)
        session.streamTask.add_done_callback(self._streams.discard)

        return OfferLocator(offer.offer, offer.peerId, self.config.signaling)

    async def _stream(self, session, channel, transferId) -> bool:
        try:
            await channel.open(self.config.ttl.total_seconds())
            record = self.store.fetchAndConsume(transferId)

            total = len(record.envelope)
            sent = 0
            for frame in framesForEnvelope(record.envelope, record.descriptor, self.config.chunkSize):
                await channel.send(packFrame(frame))
                if frame.type == FrameType.CHUNK:
                    sent += len(frame.data)
                    session.reportProgress(sent, total)

            logger.info(f"[TRANSFER] Streamed {sent} bytes of {shortId(transferId)} to peer {shortId(channel.peerId)}")
            await self._waitHangUp(channel)
            return True
        except TransferError as e:
            session.streamError = e
            logger.warning(f"[TRANSFER] Streaming {shortId(transferId)} failed ({e.category}): {e}")
            return False
        finally:
            await channel.close()

    async def _waitHangUp(self, channel):
        # Closing first could drop frames still queued for the receiver.
        try:
            await asyncio.wait_for(channel.receive(), PEER_CLOSE_TIMEOUT)
        except ChannelFailureError:
            pass
        except asyncio.TimeoutError:
            logger.debug(f"[TRANSFER] Peer {shortId(channel.peerId)} did not hang up, closing")

    # ============================================================================
    # Receiver
    # ============================================================================

    async def receive(self, link: str, session: ReceiverSession = None) -> ReceiverSession:
        session = session or ReceiverSession()
        loop = asyncio.get_running_loop()

        try:
            session.transition(TransferState.RESOLVING)
            descriptor = self.codec.decode(link)
            session.transferId = descriptor.transferId
            session.descriptor = descriptor
            key = self.crypto.importKey(descriptor.key)

            session.transition(TransferState.TRANSFERRING)
            if isinstance(descriptor.locator, OfferLocator):
                envelope = await self._receiveDirect(session, descriptor.locator)
            else:
                staging = self.stagingFor(descriptor.locator)
                envelope = await loop.run_in_executor(None, self._fetchStaged, session, staging, descriptor)

            session.transition(TransferState.DECRYPTING)
            plaintext = await loop.run_in_executor(None, self.crypto.decrypt, envelope, key)

            session.delivery = Delivery(plaintext, descriptor.originalName, len(plaintext), descriptor.originalType)
            session.transition(TransferState.DELIVERED)
        except TransferError as e:
            session.fail(e)

        return session

    def _fetchStaged(self, session, staging, descriptor):
        assembler = FrameAssembler()
        for frame in staging.fetch(descriptor.transferId):
            assembler.feed(frame)
            self._reportAssembly(session, assembler, frame)

        if not assembler.completed:
            raise IncompleteTransferError(f"Staged transfer ended with {assembler.missingCount} chunks missing")
        return envelopeFromAssembler(assembler)

    async def _receiveDirect(self, session, locator: OfferLocator):
        if self.channelFactory is None:
            raise ChannelFailureError("Direct links need a peer channel")

        channel = await self.channelFactory.acceptOffer(locator)
        try:
            await channel.open(self.config.openTimeout)

            assembler = FrameAssembler()
            completed = False
            while not completed:
                frame = unpackFrame(await channel.receive())
                completed = assembler.feed(frame)
                self._reportAssembly(session, assembler, frame)

            return envelopeFromAssembler(assembler)
        finally:
            await channel.close()

    def _reportAssembly(self, session, assembler, frame):
        if frame.type == FrameType.CHUNK:
            session.reportProgress(assembler.receivedBytes, assembler.info.get('encryptedSize', 0))

    async def close(self):
        """Stop pending streams; staged records are left to expire unless this orchestrator owns the store"""
        for task in list(self._streams):
            task.cancel()
        await asyncio.gather(*self._streams, return_exceptions=True)

        if self.channelFactory is not None:
            await self.channelFactory.close()
        if self._ownsStore:
            self.store.close()
