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

import base64
import dataclasses
import math
import threading
import time

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from burnlink.Descriptor import TransferDescriptor
from burnlink.Encryption import CipherEnvelope
from burnlink.Errors import AlreadyConsumedError, TransferExpiredError, TransferNotFoundError
from burnlink.Kernel import getLogger, shortId
from burnlink.Settings import DEFAULT_TTL, TOMBSTONE_RETENTION

logger = getLogger(__name__)


# ============================================================================
# Clocks
# ============================================================================


class SystemClock:
    """Wall clock in epoch seconds"""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to, for deterministic expiry"""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float):
        with self._lock:
            self._now += seconds

    def set(self, now: float):
        with self._lock:
            self._now = now


def toSeconds(ttl) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


# ============================================================================
# Records
# ============================================================================


@dataclass
class StoredTransfer:
    descriptor: TransferDescriptor
    envelope: Optional[CipherEnvelope]
    createdAt: float # epoch seconds
    consumed: bool = False

    @property
    def transferId(self):
        return self.descriptor.transferId

    def wiped(self):
        """Tombstone copy: no ciphertext and no key material"""
        return dataclasses.replace(self, envelope=None, descriptor=self.descriptor.withoutKey())

    def toEntry(self) -> dict:
        """Flat entry form: {encrypted, iv, key, originalName, originalSize, originalType, timestamp, consumed}"""
        envelope = self.envelope
        return {
            'encrypted': base64.b64encode(envelope.ciphertext).decode() if envelope else None,
            'iv': base64.b64encode(envelope.nonce).decode() if envelope else None,
            'key': self.descriptor.key,
            'originalName': self.descriptor.originalName,
            'originalSize': self.descriptor.originalSize,
            'originalType': self.descriptor.originalType,
            'timestamp': int(self.createdAt * 1000),
            'consumed': self.consumed,
        }


class _Slot:
    __slots__ = ('record', 'ttl', 'expired')

    def __init__(self, record: StoredTransfer, ttl: float):
        self.record = record
        self.ttl = ttl
        self.expired = False

    @property
    def expiresAt(self):
        return self.record.createdAt + self.ttl


# ============================================================================
# Store
# ============================================================================


class TransientStore:
    """Keyed, expiring, single-consumption storage of staged transfers

    One instance per sender session (or per relay process). Every access
    sweeps expired records first. Consumed and expired records are kept as
    wiped tombstones for tombstoneRetention past their expiry so callers can
    still tell "already used" and "timed out" apart from "never existed".
    """

    def __init__(self, clock=None, defaultTtl=DEFAULT_TTL, tombstoneRetention=TOMBSTONE_RETENTION):
        self.clock = clock or SystemClock()
        self.defaultTtl = toSeconds(defaultTtl)
        self.tombstoneRetention = toSeconds(tombstoneRetention)

        self._slots = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return sum(1 for slot in self._slots.values() if not slot.expired and not slot.record.consumed)

    def __contains__(self, transferId):
        with self._lock:
            return transferId in self._slots

    def stage(self, transferId: str, record: StoredTransfer, ttl=None):
        """Insert a record, replacing any stale one with the same id"""
        ttlSeconds = self.defaultTtl if ttl is None else toSeconds(ttl)
        if not math.isfinite(ttlSeconds) or ttlSeconds <= 0:
            raise ValueError(f"ttl must be positive, got {ttlSeconds}")

        with self._lock:
            self._purgeLocked()
            if transferId in self._slots:
                logger.debug(f"[STORE] Replacing stale record {shortId(transferId)}")
            self._slots[transferId] = _Slot(record, ttlSeconds)

        logger.debug(f"[STORE] Staged {shortId(transferId)} for {ttlSeconds:.0f}s")

    def _lookupLocked(self, transferId) -> _Slot:
        slot = self._slots.get(transferId)
        if slot is None:
            raise TransferNotFoundError()

        # Expiry wins over consumption.
        if slot.expired or self.clock.now() - slot.record.createdAt > slot.ttl:
            self._expireLocked(transferId, slot)
            raise TransferExpiredError()

        if slot.record.consumed:
            raise AlreadyConsumedError()

        return slot

    def fetchAndConsume(self, transferId: str) -> StoredTransfer:
        """Check existence, expiry and consumption, then mark consumed, all under one lock"""
        with self._lock:
            self._purgeLocked()
            slot = self._lookupLocked(transferId)

            record = dataclasses.replace(slot.record, consumed=True)
            slot.record = record.wiped()

        logger.info(f"[STORE] Transfer {shortId(transferId)} consumed")
        return record

    def peek(self, transferId: str) -> StoredTransfer:
        """Non-consuming lookup, returns a wiped copy (metadata only)"""
        with self._lock:
            self._purgeLocked()
            return self._lookupLocked(transferId).record.wiped()

    def ttlOf(self, transferId: str) -> float:
        with self._lock:
            slot = self._slots.get(transferId)
            if slot is None:
                raise TransferNotFoundError()
            return slot.ttl

    def discard(self, transferId: str) -> bool:
        with self._lock:
            return self._slots.pop(transferId, None) is not None

    def _expireLocked(self, transferId, slot):
        if not slot.expired:
            slot.expired = True
            slot.record = slot.record.wiped()
            logger.debug(f"[STORE] Transfer {shortId(transferId)} expired")

    def _purgeLocked(self) -> int:
        now = self.clock.now()
        purged = 0

        for transferId, slot in list(self._slots.items()):
            if now - slot.record.createdAt <= slot.ttl:
                continue

            if not slot.expired:
                self._expireLocked(transferId, slot)
                purged += 1

            if now - slot.expiresAt > self.tombstoneRetention:
                del self._slots[transferId]

        return purged

    def purgeExpired(self) -> int:
        """Wipe every record past its TTL, returns how many were newly expired"""
        with self._lock:
            purged = self._purgeLocked()

        if purged:
            logger.debug(f"[STORE] Purged {purged} expired transfer(s)")
        return purged

    def close(self):
        """Sender session ended, drop everything"""
        with self._lock:
            count = len(self._slots)
            self._slots.clear()

        logger.debug(f"[STORE] Closed, dropped {count} record(s)")
