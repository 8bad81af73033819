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


import argparse
import asyncio
import json
import os
import signal
import sys

from burnlink.CLI import configureCLIParser, configureLogging, loadEnvFile, showVersion
from burnlink.Channel import LocalStaging
from burnlink.Errors import AlreadyConsumedError, TransferError, TransferExpiredError
from burnlink.Kernel import getLogger, shortId
from burnlink.Progress import Progress
from burnlink.Relay import postAnswer
from burnlink.Server import RelayServer
from burnlink.Settings import DISABLE_WEBRTC, TransferConfig, TransferMode, parseRetention
from burnlink.Store import TransientStore
from burnlink.Transfer import ReceiverSession, SenderSession, TransferOrchestrator
from burnlink.Utils import flushPrint, formatSize, getAvailablePort, sendException
from burnlink.WebRTC import WebRTCChannelFactory

logger = getLogger(__name__)

# Seconds between checks of whether a staged link has been redeemed
REDEMPTION_POLL_INTERVAL = 0.5


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def connectProgress(session, desc):
    """Attach a progress bar to a session's progress signal, returns a getter for it"""
    holder = {}

    def onProgress(session, transferred, total, **kwargs):
        progress = holder.get('progress')
        if progress is None:
            progress = holder['progress'] = Progress(total, loggerCallback=flushPrint, useBar=True, desc=desc)
        progress.update(transferred)

    session.progress.connect(onProgress)
    return lambda: holder.get('progress')


def readFile(path):
    with open(path, 'rb') as f:
        return f.read()


def writeJSON(path, payload):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2)


async def waitForRedemption(store, transferId, timeout):
    """Keep the local relay up until the staged link is used, expires or times out"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout else None

    while True:
        try:
            store.peek(transferId)
        except AlreadyConsumedError:
            flushPrint('The link has been used, the encrypted file is gone.')
            return 0
        except TransferExpiredError:
            flushPrint('The link expired before anyone downloaded it.')
            return 0

        if deadline is not None and loop.time() >= deadline:
            flushPrint('Timeout reached, shutting down. The link will no longer work.')
            return 0

        await asyncio.sleep(REDEMPTION_POLL_INTERVAL)


async def shareFile(args, data, mode, ttl):
    store = TransientStore(defaultTtl=ttl)
    server = None
    factory = None

    # Direct mode always needs the local relay for the answer.
    if mode == TransferMode.DIRECT or not args.relay:
        server = RelayServer(host=args.host, port=getAvailablePort(args.port), store=store, maxTtl=ttl)
        server.start()

    relayURL = server.getRelayURL() if server else args.relay
    config = TransferConfig(
        mode=mode,
        ttl=ttl,
        origin=args.origin or relayURL,
        relay=None if server else args.relay,
        signaling=relayURL if mode == TransferMode.DIRECT else None,
    )

    staging = None
    if mode == TransferMode.STAGED and server:
        staging = LocalStaging(store, config.chunkSize, relay=relayURL)
    if mode == TransferMode.DIRECT:
        factory = WebRTCChannelFactory(iceServers=config.iceServers, queueSize=config.queueSize)
        server.onAnswer = factory.submitAnswer

    orchestrator = TransferOrchestrator(config, store=store, staging=staging, channelFactory=factory)
    session = SenderSession(mode)
    getProgress = connectProgress(session, 'Sending')

    try:
        session = await orchestrator.share(data, os.path.basename(args.file), session=session)
        del data

        if session.failed:
            sendException(logger, session.reason, errorPrefix='Unable to share the file')
            return 1

        flushPrint(f'Share this link (single use, expires in {args.ttl}):\n')
        flushPrint(session.link)
        flushPrint('')

        if args.json:
            writeJSON(args.json, {
                'link': session.link,
                'file': args.file,
                'size': session.descriptor.originalSize,
                'mode': mode.value,
                'ttl': int(ttl.total_seconds()),
                'relay': relayURL,
            })

        if server is None:
            flushPrint(f'The encrypted file is staged on {relayURL}, you can close this window.')
            return 0

        if mode == TransferMode.STAGED:
            flushPrint('Keep this window open until the file has been downloaded.')
            return await waitForRedemption(store, session.transferId, args.timeout)

        flushPrint('Keep this window open, the file streams directly to the recipient.')
        try:
            streamed = await session.waitStreamed(args.timeout or None)
        except asyncio.TimeoutError:
            flushPrint('Timeout reached, shutting down. The link will no longer work.')
            return 0

        progress = getProgress()
        if progress:
            progress.finishBar(complete=streamed)

        if not streamed:
            sendException(logger, session.streamError, errorPrefix='Streaming failed')
            return 1

        flushPrint(f'Sent {formatSize(session.descriptor.originalSize)} to [#{shortId(session.transferId, 5)}].')
        return 0
    finally:
        await orchestrator.close()
        if server:
            server.stop()
        store.close()


def processFileSharing(args):
    """
    Share one file through a single-use link

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    if not os.path.isfile(args.file):
        flushPrint(f'"{args.file}" does not exist or is not a file!')
        return 1

    mode = TransferMode(args.mode)
    if mode == TransferMode.DIRECT and DISABLE_WEBRTC:
        flushPrint('Error: direct mode is disabled by DISABLE_WEBRTC')
        return 1
    if mode == TransferMode.DIRECT and args.relay:
        flushPrint('Error: --relay only applies to staged mode')
        return 1

    return asyncio.run(shareFile(args, readFile(args.file), mode, parseRetention(args.ttl)))


def resolveOutputPath(output, name):
    # Never trust a path from the link.
    safeName = os.path.basename(name.replace('\\', '/')) or 'download'
    if not output:
        return safeName
    if os.path.isdir(output):
        return os.path.join(output, safeName)
    return output


async def downloadFile(args):
    factory = None if DISABLE_WEBRTC else WebRTCChannelFactory(answerSender=postAnswer)
    orchestrator = TransferOrchestrator(channelFactory=factory)
    session = ReceiverSession()
    getProgress = connectProgress(session, 'Receiving')

    try:
        session = await orchestrator.receive(args.url, session=session)
    finally:
        await orchestrator.close()

    progress = getProgress()
    if progress:
        progress.finishBar(complete=not session.failed)

    if session.failed:
        action = 'Check the connection and open the link again.' if getattr(session.error, 'retryable', False) else None
        sendException(logger, session.reason, action=action, errorPrefix='Download failed')
        return 1

    delivery = session.delivery
    outputPath = resolveOutputPath(args.output, delivery.name)
    with open(outputPath, 'wb') as f:
        for block in delivery.iterChunks():
            f.write(block)

    logger.debug(f"File downloaded successfully: {outputPath} ({delivery.mimeType})")
    flushPrint(f"Downloaded: {outputPath} ({formatSize(delivery.size)})")
    return 0


def processDownload(args):
    """
    Resolve a link, fetch or receive the ciphertext, decrypt and save it

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    return asyncio.run(downloadFile(args))


def processRelay(args):
    maxTtl = parseRetention(args.maxTtl)
    server = RelayServer(host=args.host, port=getAvailablePort(args.port), maxTtl=maxTtl)

    flushPrint(f'Relay listening on {server.getRelayURL()} (max TTL {args.maxTtl}), press Ctrl+C to stop.')
    try:
        server.serve_forever(poll_interval=0.5)
    finally:
        server.server_close()
        server.store.close()
    return 0


def runCLIMain(argv=None):
    """Run the CLI using two-phase parsing"""
    parser, globalsParent, commandNames = configureCLIParser()

    argv = sys.argv[1:] if argv is None else list(argv)
    if not argv:
        parser.print_help()
        return 0

    # Phase 1: separate global args from the rest
    try:
        globalArgs, rest = globalsParent.parse_known_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    configureLogging(globalArgs.logLevel)

    if globalArgs.version:
        showVersion()
        return 0

    if not rest:
        parser.print_help()
        return 0

    # Phase 2: auto-insert 'download' for links and 'share' for paths
    if rest[0] not in commandNames:
        prefixLen = len(argv) - len(rest)
        if rest[0].startswith('https://') or rest[0].startswith('http://'):
            argv = argv[:prefixLen] + ['download'] + rest
        else:
            argv = argv[:prefixLen] + ['share'] + rest

    # Phase 3: final parsing with subcommand determined
    try:
        args = parser.parse_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == 'download':
        return processDownload(args)

    if args.command == 'relay':
        return processRelay(args)

    if args.file is None:
        parser.print_help()
        return 0

    return processFileSharing(args)


def main():
    loadEnvFile()
    setupGracefulShutdown()

    try:
        return runCLIMain()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0


if __name__ == '__main__':
    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(0)
    except TransferError as e:
        sendException(logger, e.userMessage)
        sys.exit(1)
    except PermissionError as e:
        sendException(logger, e, action='Check the file permissions and try again.')
        sys.exit(1)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)
