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
import math
import struct

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from burnlink.Errors import IncompleteTransferError, ProtocolViolationError
from burnlink.Kernel import getLogger
from burnlink.Settings import TRANSFER_CHUNK_SIZE

logger = getLogger(__name__)

# Upper bound on chunks announced by an info frame
MAX_TOTAL_CHUNKS = 4 * 1024 * 1024


class FrameType(Enum):
    INFO = 'info'
    CHUNK = 'chunk'
    COMPLETE = 'complete'


@dataclass
class Frame:
    type: FrameType
    data: Any = None
    chunkIndex: Optional[int] = None
    totalChunks: Optional[int] = None

    @classmethod
    def info(cls, metadata: dict):
        return cls(FrameType.INFO, dict(metadata), totalChunks=metadata['totalChunks'])

    @classmethod
    def chunk(cls, chunkIndex: int, totalChunks: int, payload: bytes):
        return cls(FrameType.CHUNK, bytes(payload), chunkIndex, totalChunks)

    @classmethod
    def complete(cls):
        return cls(FrameType.COMPLETE)

    def toMessage(self) -> dict:
        """Structured message form: {type, data, chunkIndex?, totalChunks?}"""
        message = {'type': self.type.value, 'data': self.data if self.type != FrameType.COMPLETE else None}
        if self.chunkIndex is not None:
            message['chunkIndex'] = self.chunkIndex
        if self.totalChunks is not None:
            message['totalChunks'] = self.totalChunks
        return message


# ============================================================================
# Split / Reassemble
# ============================================================================


def countChunks(payloadSize: int, chunkSize: int) -> int:
    return math.ceil(payloadSize / chunkSize)


def iterFrames(payload: bytes, chunkSize: int = TRANSFER_CHUNK_SIZE, metadata: dict = None) -> Iterator[Frame]:
    """Lazily yield info, chunk frames in index order, then complete"""
    if chunkSize <= 0:
        raise ValueError(f"chunkSize must be positive, got {chunkSize}")

    view = memoryview(payload)
    totalChunks = countChunks(len(view), chunkSize)

    info = {'size': len(view)}
    info.update(metadata or {})
    info['totalChunks'] = totalChunks
    info['encryptedSize'] = len(view)
    yield Frame.info(info)

    for index in range(totalChunks):
        start = index * chunkSize
        yield Frame.chunk(index, totalChunks, view[start:start + chunkSize])

    yield Frame.complete()


def split(payload: bytes, chunkSize: int = TRANSFER_CHUNK_SIZE, metadata: dict = None) -> list:
    return list(iterFrames(payload, chunkSize, metadata))


class FrameAssembler:
    """Buffer chunk frames by index until complete arrives

    Robust to reordered chunk frames; an ordered channel simply fills the
    buffer in append order.
    """

    def __init__(self):
        self.info = None
        self.totalChunks = None
        self.completed = False
        self._chunks = {}
        self._receivedBytes = 0

    @property
    def received(self) -> int:
        return len(self._chunks)

    @property
    def receivedBytes(self) -> int:
        return self._receivedBytes

    @property
    def missingCount(self) -> int:
        if self.totalChunks is None:
            return 0
        return self.totalChunks - len(self._chunks)

    def missing(self) -> list:
        if self.totalChunks is None:
            return []
        return [index for index in range(self.totalChunks) if index not in self._chunks]

    def feed(self, frame: Frame) -> bool:
        """Accept one frame, returns True once the complete frame has been accepted"""
        if self.completed:
            raise ProtocolViolationError(f"Frame '{frame.type.value}' received after complete")

        if frame.type == FrameType.INFO:
            self._acceptInfo(frame)
        elif frame.type == FrameType.CHUNK:
            self._acceptChunk(frame)
        elif frame.type == FrameType.COMPLETE:
            self._acceptComplete()
        else:
            raise ProtocolViolationError(f"Unknown frame type: {frame.type!r}")

        return self.completed

    def _acceptInfo(self, frame):
        if self.info is not None:
            raise ProtocolViolationError("Duplicate info frame")

        data = frame.data
        if not isinstance(data, dict):
            raise ProtocolViolationError("Info frame carries no metadata")

        totalChunks = data.get('totalChunks')
        if not isinstance(totalChunks, int) or isinstance(totalChunks, bool) or totalChunks < 0:
            raise ProtocolViolationError(f"Invalid totalChunks in info frame: {totalChunks!r}")
        if totalChunks > MAX_TOTAL_CHUNKS:
            raise ProtocolViolationError(f"Info frame announces too many chunks: {totalChunks} > {MAX_TOTAL_CHUNKS}")
        encryptedSize = data.get('encryptedSize')
        if isinstance(encryptedSize, int) and not isinstance(encryptedSize, bool) and totalChunks > encryptedSize:
            raise ProtocolViolationError(f"Info frame announces {totalChunks} chunks for {encryptedSize} bytes")
        if frame.totalChunks is not None and frame.totalChunks != totalChunks:
            raise ProtocolViolationError("Info frame totalChunks does not match its metadata")

        self.info = data
        self.totalChunks = totalChunks

    def _acceptChunk(self, frame):
        if self.info is None:
            raise ProtocolViolationError("Chunk frame received before info")

        index = frame.chunkIndex
        if not isinstance(index, int) or index < 0 or index >= self.totalChunks:
            raise ProtocolViolationError(f"Chunk index {index!r} out of range 0..{self.totalChunks - 1}")
        if frame.totalChunks is not None and frame.totalChunks != self.totalChunks:
            raise ProtocolViolationError(
                f"Chunk {index} claims {frame.totalChunks} chunks, info announced {self.totalChunks}"
            )
        if index in self._chunks:
            raise ProtocolViolationError(f"Duplicate chunk index {index}")
        if not isinstance(frame.data, (bytes, bytearray, memoryview)):
            raise ProtocolViolationError(f"Chunk {index} carries no payload")

        payload = bytes(frame.data)
        self._chunks[index] = payload
        self._receivedBytes += len(payload)

    def _acceptComplete(self):
        if self.info is None:
            raise ProtocolViolationError("Complete frame received before info")

        missingCount = self.missingCount
        if missingCount:
            first = next(index for index in range(self.totalChunks) if index not in self._chunks)
            raise IncompleteTransferError(
                f"Transfer completed with {missingCount} of {self.totalChunks} chunks missing (first: {first})"
            )
        self.completed = True

    def result(self) -> bytes:
        if not self.completed:
            raise IncompleteTransferError("Transfer has not completed")
        return b''.join(self._chunks[index] for index in range(self.totalChunks))


def reassemble(frames: Iterable[Frame]) -> bytes:
    assembler = FrameAssembler()
    for frame in frames:
        assembler.feed(frame)

    if not assembler.completed:
        raise IncompleteTransferError(f"Frame stream ended without complete ({assembler.missingCount} chunks missing)")

    return assembler.result()


# ============================================================================
# Wire format
# ============================================================================


class FramePacker:
    """Binary TLV form of a frame

    Frame format:
    | Magic(2) | Ver(1) | Type(1) | ChunkIndex(4, uint32 BE) |
    | TotalChunks(4, uint32 BE) | BodyLen(4, uint32 BE) | Body (BodyLen bytes) |

    Body is UTF-8 JSON metadata for info, raw payload for chunk, empty for complete.
    """
    MAGIC = b'\xB1\x4E'
    VERSION = 1
    HEADER = struct.Struct('!2sBBIII')
    HEADER_SIZE = HEADER.size # 16 bytes
    MAX_BODY = 64 * 1024 * 1024

    TYPE_CODES = {FrameType.INFO: 1, FrameType.CHUNK: 2, FrameType.COMPLETE: 3}
    CODE_TYPES = {code: frameType for frameType, code in TYPE_CODES.items()}

    @classmethod
    def pack(cls, frame: Frame) -> bytes:
        if frame.type == FrameType.INFO:
            body = json.dumps(frame.data, separators=(',', ':')).encode('utf-8')
            index = 0
        elif frame.type == FrameType.CHUNK:
            body = bytes(frame.data)
            index = frame.chunkIndex
        else:
            body = b''
            index = 0

        header = cls.HEADER.pack(
            cls.MAGIC, cls.VERSION, cls.TYPE_CODES[frame.type], index, frame.totalChunks or 0, len(body)
        )
        return header + body

    @classmethod
    def parseHeader(cls, header: bytes):
        magic, version, typeCode, index, totalChunks, bodyLength = cls.HEADER.unpack(header)

        if magic != cls.MAGIC:
            raise ProtocolViolationError(f"Invalid magic bytes: {magic.hex()}")
        if version != cls.VERSION:
            raise ProtocolViolationError(f"Unsupported frame version: {version}")
        if typeCode not in cls.CODE_TYPES:
            raise ProtocolViolationError(f"Unknown frame type code: {typeCode}")
        if bodyLength > cls.MAX_BODY:
            raise ProtocolViolationError(f"Frame body too large: {bodyLength}")

        return cls.CODE_TYPES[typeCode], index, totalChunks, bodyLength

    @classmethod
    def build(cls, frameType, index, totalChunks, body: bytes) -> Frame:
        if frameType == FrameType.INFO:
            try:
                metadata = json.loads(body.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
                raise ProtocolViolationError(f"Info frame metadata is not JSON: {e}")
            return Frame(FrameType.INFO, metadata, totalChunks=totalChunks)

        if frameType == FrameType.CHUNK:
            return Frame(FrameType.CHUNK, bytes(body), index, totalChunks)

        if body:
            raise ProtocolViolationError("Complete frame must not carry data")
        return Frame.complete()

    @classmethod
    def unpack(cls, data: bytes) -> Frame:
        if len(data) < cls.HEADER_SIZE:
            raise ProtocolViolationError(f"Frame too short: {len(data)} < {cls.HEADER_SIZE}")

        frameType, index, totalChunks, bodyLength = cls.parseHeader(data[:cls.HEADER_SIZE])
        body = data[cls.HEADER_SIZE:]
        if len(body) != bodyLength:
            raise ProtocolViolationError(f"Frame body length mismatch: expected {bodyLength}, got {len(body)}")

        return cls.build(frameType, index, totalChunks, body)


def packFrame(frame: Frame) -> bytes:
    return FramePacker.pack(frame)


def unpackFrame(data: bytes) -> Frame:
    return FramePacker.unpack(data)


def iterPackedFrames(stream: Iterable[bytes]) -> Iterator[Frame]:
    """Parse back-to-back packed frames from arbitrarily split byte blocks"""
    buffer = bytearray()
    expected = None # (frameType, index, totalChunks, bodyLength) of the frame being read

    for block in stream:
        if not block:
            continue
        buffer.extend(block)

        while True:
            if expected is None:
                if len(buffer) < FramePacker.HEADER_SIZE:
                    break
                expected = FramePacker.parseHeader(bytes(buffer[:FramePacker.HEADER_SIZE]))
                del buffer[:FramePacker.HEADER_SIZE]

            bodyLength = expected[3]
            if len(buffer) < bodyLength:
                break

            body = bytes(buffer[:bodyLength])
            del buffer[:bodyLength]
            frameType, index, totalChunks, _ = expected
            expected = None
            yield FramePacker.build(frameType, index, totalChunks, body)

    if expected is not None or buffer:
        raise IncompleteTransferError(f"Frame stream truncated ({len(buffer)} trailing bytes)")
