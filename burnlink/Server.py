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
import re
import threading

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional

from burnlink.Channel import envelopeFromAssembler, framesForEnvelope
from burnlink.Descriptor import StagedLocator, TransferDescriptor
from burnlink.Errors import (
    AlreadyConsumedError, ProtocolViolationError, TransferError, TransferExpiredError, TransferNotFoundError
)
from burnlink.Framing import FrameAssembler, iterPackedFrames, packFrame
from burnlink.Kernel import PUBLIC_VERSION, getLogger, shortId
from burnlink.Relay import EXPIRES_HEADER, SIZE_HEADER, TTL_HEADER
from burnlink.Settings import DEFAULT_TTL, LINK_PATH, TRANSFER_CHUNK_SIZE
from burnlink.Store import StoredTransfer, TransientStore, toSeconds

logger = getLogger(__name__)

TRANSFER_PATH = re.compile(r'^/transfers/([0-9a-f]{32})$')

MAX_UPLOAD_SIZE = 4 * 1024 * 1024 * 1024
MAX_ANSWER_SIZE = 256 * 1024

ERROR_STATUS = {
    TransferNotFoundError: HTTPStatus.NOT_FOUND,
    AlreadyConsumedError: HTTPStatus.CONFLICT,
    TransferExpiredError: HTTPStatus.GONE,
}


class RelayRequestHandler(BaseHTTPRequestHandler):
    """Ciphertext-only relay: PUT stages, GET consumes, HEAD peeks, POST /answer signals"""

    server_version = f'BurnLink/{PUBLIC_VERSION}'

    def log_message(self, format, *args):
        logger.debug(f"Relay request: {format % args}")

    def _sendJSON(self, status, payload, headers=None):
        body = json.dumps(payload).encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(body)

    def _sendError(self, error):
        status = ERROR_STATUS.get(type(error), HTTPStatus.BAD_REQUEST)
        self._sendJSON(status, {'error': error.category, 'message': str(error)})

    def _readBody(self, limit):
        contentLength = int(self.headers.get('Content-Length', 0) or 0)
        if contentLength <= 0:
            self._sendJSON(HTTPStatus.BAD_REQUEST, {'error': 'empty-body', 'message': 'Empty request body'})
            return None
        if contentLength > limit:
            self._sendJSON(
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE, {'error': 'too-large', 'message': 'Request body too large'}
            )
            return None
        return self.rfile.read(contentLength)

    def _matchTransfer(self):
        match = TRANSFER_PATH.match(self.path.split('?', 1)[0])
        if not match:
            self._sendJSON(HTTPStatus.NOT_FOUND, {'error': 'not-found', 'message': f'No route for {self.path}'})
            return None
        return match.group(1)

    def do_PUT(self):
        transferId = self._matchTransfer()
        if transferId is None:
            return

        body = self._readBody(MAX_UPLOAD_SIZE)
        if body is None:
            return

        try:
            ttl = self.server.parseTTL(self.headers.get(TTL_HEADER))
        except ValueError as e:
            self._sendJSON(HTTPStatus.BAD_REQUEST, {'error': 'invalid-ttl', 'message': str(e)})
            return

        try:
            expiresAt = self.server.stageFrames(transferId, body, ttl)
        except TransferError as e:
            logger.warning(f"Rejected upload for {shortId(transferId)}: {e}")
            self._sendError(e)
            return

        self._sendJSON(HTTPStatus.CREATED, {'transferId': transferId, 'expiresAt': expiresAt})

    def do_GET(self):
        path = self.path.split('?', 1)[0]
        if path.startswith(f'/{LINK_PATH}/'):
            self._sendLinkHint()
            return

        transferId = self._matchTransfer()
        if transferId is None:
            return

        try:
            record = self.server.store.fetchAndConsume(transferId)
        except TransferError as e:
            self._sendError(e)
            return

        # HTTP/1.0 without Content-Length: the closed connection ends the body.
        self.send_response(HTTPStatus.OK)
        self.send_header('Content-Type', 'application/octet-stream')
        self.send_header('Cache-Control', 'no-store')
        self.end_headers()

        try:
            frames = framesForEnvelope(
                record.envelope, record.descriptor, self.server.chunkSize, includeFileInfo=False
            )
            for frame in frames:
                self.wfile.write(packFrame(frame))
            self.wfile.flush()
        except (BrokenPipeError, ConnectionResetError) as e:
            # Consumed regardless, the link is spent.
            logger.warning(f"Receiver of {shortId(transferId)} disconnected mid-transfer: {e}")
            return

        logger.info(f"Transfer {shortId(transferId)} delivered to {self.client_address[0]}")

    def do_HEAD(self):
        transferId = self._matchTransfer()
        if transferId is None:
            return

        try:
            record, expiresAt = self.server.status(transferId)
        except TransferError as e:
            self._sendError(e)
            return

        self._sendJSON(
            HTTPStatus.OK, {}, headers={SIZE_HEADER: str(record.descriptor.originalSize), EXPIRES_HEADER: str(expiresAt)}
        )

    def do_POST(self):
        if self.path.split('?', 1)[0] != '/answer':
            self._sendJSON(HTTPStatus.NOT_FOUND, {'error': 'not-found', 'message': f'No route for {self.path}'})
            return

        body = self._readBody(MAX_ANSWER_SIZE)
        if body is None:
            return

        if self.server.onAnswer is None:
            self._sendJSON(
                HTTPStatus.NOT_FOUND, {'error': 'not-found', 'message': 'This relay does not accept answers'}
            )
            return

        try:
            data = json.loads(body.decode('utf-8'))
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
            self._sendJSON(HTTPStatus.BAD_REQUEST, {'error': 'invalid-json', 'message': f'Invalid JSON: {e}'})
            return

        if not isinstance(data, dict) or not all(isinstance(data.get(k), str) for k in ('peerId', 'type', 'sdp')):
            self._sendJSON(HTTPStatus.BAD_REQUEST, {'error': 'invalid-answer', 'message': 'Missing peerId, type or sdp'})
            return

        try:
            self.server.onAnswer(data)
        except TransferError as e:
            self._sendError(e)
            return

        self._sendJSON(HTTPStatus.OK, {'status': 'ok'})

    def _sendLinkHint(self):
        body = (
            'This is a BurnLink share link. The file is end-to-end encrypted and can be used only once.\n'
            'Download it with:  burnlink download "<this link>"\n'
        ).encode('utf-8')
        self.send_response(HTTPStatus.OK)
        self.send_header('Content-Type', 'text/plain; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class RelayServer(ThreadingHTTPServer):
    """
    HTTP relay that stages ciphertext for single-use retrieval.

    Example:
        server = RelayServer(host='127.0.0.1', port=0)
        server.start()
        print(f"Relay URL: {server.getRelayURL()}")

    The embedded form shares the sender's TransientStore so that locally staged
    transfers become reachable over HTTP; onAnswer receives direct-mode answers.
    """

    daemon_threads = True

    def __init__(
        self,
        host: str = '127.0.0.1',
        port: int = 0,
        store: Optional[TransientStore] = None,
        maxTtl=DEFAULT_TTL,
        chunkSize: int = TRANSFER_CHUNK_SIZE,
        onAnswer: Optional[Callable[[dict], None]] = None,
    ):
        super().__init__((host, port), RelayRequestHandler)

        self.host = host
        self.port = self.server_address[1]
        self.store = store if store is not None else TransientStore(defaultTtl=maxTtl)
        self.maxTtl = toSeconds(maxTtl)
        self.chunkSize = chunkSize
        self.onAnswer = onAnswer

        self._thread: Optional[threading.Thread] = None
        self._running = False

    def parseTTL(self, value) -> float:
        """TTL header in seconds, capped at maxTtl; absent means maxTtl"""
        if value is None:
            return self.maxTtl

        try:
            ttl = float(value)
        except ValueError:
            raise ValueError(f"Invalid TTL header: {value!r}")

        if not math.isfinite(ttl) or ttl <= 0:
            raise ValueError(f"TTL must be a positive number, got {value!r}")
        return min(ttl, self.maxTtl)

    def stageFrames(self, transferId, body: bytes, ttl: float) -> float:
        """Validate uploaded frames and stage the envelope, returns the expiry epoch"""
        assembler = FrameAssembler()
        for frame in iterPackedFrames([body]):
            assembler.feed(frame)

        envelope = envelopeFromAssembler(assembler)
        size = assembler.info.get('size', len(envelope))
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ProtocolViolationError(f"Info frame carries an invalid size: {size!r}")

        now = self.store.clock.now()

        # No key, no name: the relay only knows the ciphertext and its size.
        descriptor = TransferDescriptor(
            transferId=transferId,
            key=None,
            locator=StagedLocator(None),
            originalName='',
            originalSize=size,
            originalType='',
            createdAt=int(now * 1000),
        )
        self.store.stage(transferId, StoredTransfer(descriptor, envelope, createdAt=now), ttl)
        logger.info(f"Staged {shortId(transferId)} ({len(envelope)} bytes) for {ttl:.0f}s")
        return now + ttl

    def status(self, transferId):
        record = self.store.peek(transferId)
        ttl = self.store.ttlOf(transferId)
        return record, record.createdAt + ttl

    def start(self):
        if self._running:
            raise RuntimeError("Relay server already running")

        self._running = True
        self._thread = threading.Thread(target=self.serve_forever, kwargs={'poll_interval': 0.5}, daemon=True)
        self._thread.start()

        logger.debug(f"Relay server started on {self.getRelayURL()}")

    def stop(self):
        if not self._running:
            return

        self._running = False
        self.shutdown()
        self.server_close()

        if self._thread:
            self._thread.join(timeout=5.0)

        logger.debug("Relay server stopped")

    def getRelayURL(self) -> str:
        host = '127.0.0.1' if self.host in ('', '0.0.0.0') else self.host
        return f'http://{host}:{self.port}'
