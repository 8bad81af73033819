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

import math

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional

from burnlink.Utils import ONE_KB, getEnv

# Frame payload size (16 KiB) - stays under the data channel per-message ceiling
TRANSFER_CHUNK_SIZE = getEnv('TRANSFER_CHUNK_SIZE', int(16 * ONE_KB))

# Links expire after download or after this long, whichever comes first
DEFAULT_TTL = timedelta(seconds=getEnv('BURNLINK_DEFAULT_TTL', 24 * 60 * 60))

# How long tombstones of consumed/expired transfers are remembered
TOMBSTONE_RETENTION = timedelta(seconds=getEnv('BURNLINK_TOMBSTONE_RETENTION', 24 * 60 * 60))

RETENTION_TIMES = {
    '10 minutes': timedelta(minutes=10),
    '1 hour': timedelta(hours=1),
    '3 hours': timedelta(hours=3),
    '6 hours': timedelta(hours=6),
    '12 hours': timedelta(hours=12),
    '24 hours': timedelta(days=1),
}

DEFAULT_RETENTION = '24 hours'

DEFAULT_ORIGIN = getEnv('BURNLINK_ORIGIN', 'http://127.0.0.1:8080')
LINK_PATH = 'download'

# Bounded inbound queue of a peer channel, in messages
CHANNEL_QUEUE_SIZE = getEnv('BURNLINK_CHANNEL_QUEUE_SIZE', 64)

# Seconds a receiver waits for the peer channel to open
CHANNEL_OPEN_TIMEOUT = getEnv('BURNLINK_CHANNEL_OPEN_TIMEOUT', 30.0)

# Seconds a sender waits for the receiver to hang up after the complete frame
PEER_CLOSE_TIMEOUT = getEnv('BURNLINK_PEER_CLOSE_TIMEOUT', 30.0)

# Data channel buffered amount that pauses the sender until drained
CHANNEL_BUFFER_THRESHOLD = getEnv('BURNLINK_CHANNEL_BUFFER_THRESHOLD', 16 * TRANSFER_CHUNK_SIZE)

ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun.cloudflare.com:3478",
]

DISABLE_WEBRTC = getEnv('DISABLE_WEBRTC', False)

# Relay request timeout in seconds (connect, read)
RELAY_TIMEOUT = (getEnv('BURNLINK_RELAY_CONNECT_TIMEOUT', 10.0), getEnv('BURNLINK_RELAY_READ_TIMEOUT', 60.0))


class TransferMode(Enum):
    STAGED = 'staged' # store-and-forward through a staging backend
    DIRECT = 'direct' # live stream over a peer channel


def parseRetention(text):
    """Map a retention name ('24 hours') or a number of seconds to a timedelta"""
    if isinstance(text, timedelta):
        return text

    if text in RETENTION_TIMES:
        return RETENTION_TIMES[text]

    try:
        seconds = float(text)
    except (TypeError, ValueError):
        choices = ', '.join(RETENTION_TIMES)
        raise ValueError(f"Unknown retention '{text}', choose one of: {choices} or a number of seconds")

    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"Retention must be a positive number of seconds, got {text!r}")
    return timedelta(seconds=seconds)


@dataclass
class TransferConfig:
    mode: TransferMode = TransferMode.STAGED
    chunkSize: int = TRANSFER_CHUNK_SIZE
    ttl: timedelta = DEFAULT_TTL
    origin: str = DEFAULT_ORIGIN
    relay: Optional[str] = None # remote relay URL for staged mode, None stages in the session store
    signaling: Optional[str] = None # where receivers post their answer in direct mode
    queueSize: int = CHANNEL_QUEUE_SIZE
    openTimeout: float = CHANNEL_OPEN_TIMEOUT
    iceServers: list = field(default_factory=lambda: list(ICE_SERVERS))

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = TransferMode(self.mode)
        self.ttl = parseRetention(self.ttl)
        if self.chunkSize <= 0:
            raise ValueError(f"chunkSize must be positive, got {self.chunkSize}")
