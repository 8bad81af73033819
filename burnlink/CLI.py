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
import json
import os
import logging
import logging.config
import platform

from burnlink.Kernel import PUBLIC_VERSION, getLogger, configureGlobalLogLevel
from burnlink.Settings import DEFAULT_RETENTION, RETENTION_TIMES, TransferMode
from burnlink.Utils import SUPPORT_URL, flushPrint, getEnv

logger = getLogger(__name__)

ENV_FILE_LOCATIONS = ('.env', os.path.join('~', '.burnlink', '.env'))


def findEnvFile():
    for location in ENV_FILE_LOCATIONS:
        path = os.path.expanduser(location)
        if os.path.isfile(path):
            return path
    return None


def loadEnvFile(envFilePath=None):
    """
    Load environment variables from a .env file (./.env, then ~/.burnlink/.env).
    Only sets variables that are not already defined in os.environ.
    """
    envFilePath = envFilePath or findEnvFile()
    if not envFilePath or not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    flushPrint(f'Warning: .env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    flushPrint(f'Warning: .env line {lineNum}: Empty key')
                    continue

                if (value.startswith('"') and value.endswith('"')) or \
                   (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')

    except OSError as e:
        flushPrint(f'Error: Unable to read .env file {envFilePath}: {e}')
        logger.error(f'Unable to read .env file: {e}', exc_info=True)

    return loadedCount


def configureLogging(logLevel):
    """Configure logging from a level name or a dictConfig JSON file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. BURNLINK_LOGGING_LEVEL environment variable
    3. None (no configuration change)
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)
        logging.getLogger('aiortc').setLevel(logging.WARNING)
        logging.getLogger('aioice').setLevel(logging.WARNING)

    if logLevel is None:
        logLevel = getEnv('BURNLINK_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    levelMapping = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}

    if logLevel.upper() in levelMapping:
        configureGlobalLogLevel(levelMapping[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f"BurnLink v{PUBLIC_VERSION}")
    flushPrint("")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Support: {SUPPORT_URL}")


def configureCLIParser():
    """Build the parser; a global parent parser is shared by every subcommand

    Returns:
        tuple: (parser, globalsParent, commandNames)
    """

    def validatePort(portStr):
        try:
            port = int(portStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")
        if not (1024 <= port <= 65535):
            raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (1024-65535)")
        return port

    def validateTimeout(timeoutStr):
        try:
            value = int(timeoutStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid timeout value: {timeoutStr}")
        if value < 0:
            raise argparse.ArgumentTypeError(f"Timeout {value} cannot be negative")
        return value

    def validateLogLevel(logLevel):
        if os.path.exists(logLevel):
            return logLevel

        validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if logLevel.upper() not in validLevels:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}"
            )
        return logLevel.upper()

    def validateURL(url):
        if not url.startswith(('http://', 'https://')):
            raise argparse.ArgumentTypeError(f"Expected an http(s) URL: {url}")
        return url.rstrip('/')

    # === 1) Global parameters in a parent parser ===
    globalsParent = argparse.ArgumentParser(add_help=False, exit_on_error=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: WARNING)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )

    # === 2) Main parser + subparsers; all inherit from globalsParent ===
    parser = argparse.ArgumentParser(
        prog='burnlink',
        description="BurnLink shares a file through a single-use, end-to-end encrypted link.",
        parents=[globalsParent],
        exit_on_error=False,
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    shareSubparser = subparsers.add_parser(
        'share', help='Share a file (default command)', parents=[globalsParent], exit_on_error=False
    )
    shareSubparser.add_argument("file", metavar="FILE", help="Choose a file you want to share", nargs='?')
    shareSubparser.add_argument(
        "--mode",
        choices=[mode.value for mode in TransferMode],
        default=TransferMode.STAGED.value,
        help="staged: serve ciphertext from a relay until downloaded; direct: stream over WebRTC (default: staged)"
    )
    shareSubparser.add_argument(
        "--relay",
        type=validateURL,
        metavar="URL",
        help="Stage the ciphertext on this remote relay instead of serving it from this machine"
    )
    shareSubparser.add_argument(
        "--ttl",
        choices=list(RETENTION_TIMES),
        default=DEFAULT_RETENTION,
        help=f"How long the link stays redeemable if nobody downloads it (default: {DEFAULT_RETENTION})"
    )
    shareSubparser.add_argument(
        "--port",
        type=validatePort,
        help="Port number for the local relay (1024-65535, default: auto-detect available port)",
        metavar="PORT"
    )
    shareSubparser.add_argument(
        "--host", default='127.0.0.1', help="Interface the local relay listens on (default: 127.0.0.1)"
    )
    shareSubparser.add_argument(
        "--origin",
        type=validateURL,
        metavar="URL",
        help="Origin used in the printed link (default: the relay URL)"
    )
    shareSubparser.add_argument(
        "--timeout",
        type=validateTimeout,
        default=0,
        help="Seconds before the local relay shuts down. 0 means it runs until the link is used or expires."
    )
    shareSubparser.add_argument("--json", metavar="JSON_FILE", help="Output the link and its settings to a JSON file")

    downloadSubparser = subparsers.add_parser(
        'download', help='Download a file from a BurnLink link', parents=[globalsParent], exit_on_error=False
    )
    downloadSubparser.add_argument("url", metavar="LINK", help="BurnLink link to download from")
    downloadSubparser.add_argument(
        "--output", "-o", metavar="PATH", help="Output file path (default: use the filename from the link)"
    )

    relaySubparser = subparsers.add_parser(
        'relay', help='Run a standalone ciphertext-only relay', parents=[globalsParent], exit_on_error=False
    )
    relaySubparser.add_argument("--port", type=validatePort, default=None, metavar="PORT", help="Port to listen on")
    relaySubparser.add_argument("--host", default='127.0.0.1', help="Interface to listen on (default: 127.0.0.1)")
    relaySubparser.add_argument(
        "--max-ttl",
        choices=list(RETENTION_TIMES),
        default=DEFAULT_RETENTION,
        help=f"Upper bound for staged transfer lifetimes (default: {DEFAULT_RETENTION})",
        dest="maxTtl"
    )

    commandNames = {'share', 'download', 'relay'}
    return parser, globalsParent, commandNames
