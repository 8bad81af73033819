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
import socket
import sys

import bitmath
import requests

from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter

from burnlink.Kernel import getLogger, PUBLIC_VERSION

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

SUPPORT_URL = 'https://github.com/burnlink/burnlink/discussions'

logger = getLogger(__name__)


def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
            return

        print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format(
        "{value:.%df}{%s}" % (decimal, 'unit_plural' if plural else 'unit')
    )

    if not sizeStr.endswith('Byte') and not sizeStr.endswith('Bytes') and not sizeStr.endswith('Bits'):
        return sizeStr.replace('B', '').upper()
    else:
        return sizeStr.replace('Byte', ' Byte').replace('Bit', ' Byte')


def getAvailablePort(port=None):
    """
    Get an available port for the local relay.

    Args:
        port: Specific port to check (None for auto-detect)

    Returns:
        int: Available port number

    Raises:
        OSError: If specified port is not available
    """
    if port is not None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('127.0.0.1', port))
            return port
        except OSError:
            raise OSError(f"Port {port} is already in use or not available")
        finally:
            sock.close()

    sock = socket.socket()
    try:
        sock.bind(('', 0))
        _, port = sock.getsockname()
        return port
    finally:
        sock.close()


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else: # only errorPrefix without e?
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)
    else:
        flushPrint('Please try again or try later.')

    flushPrint(f'\nIf you still get the same problem, please contact us at {SUPPORT_URL}.\n')

    if isinstance(e, BaseException):
        logger.error(f'{errorPrefix}: {e}', exc_info=e)
    else:
        logger.error(f'{errorPrefix}: {e}')

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default


class ConnectRetryAdapter(HTTPAdapter):
    """
    HTTP adapter that retries connection establishment only.

    Relay GETs consume the transfer server-side, so a request that reached the
    relay must never be re-sent; read and status retries are disabled.
    """

    def __init__(self, connectRetries=2, *args, **kwargs):
        kwargs['max_retries'] = Retry(
            total=connectRetries,
            connect=connectRetries,
            read=0,
            status=0,
            other=0,
            backoff_factor=0.5,
            raise_on_status=False
        )
        super().__init__(*args, **kwargs)


def createSession(connectRetries=2):
    """Create a requests session for relay and signaling calls"""
    session = requests.Session()
    adapter = ConnectRetryAdapter(connectRetries=connectRetries)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    session.headers['User-Agent'] = f'BurnLink/{PUBLIC_VERSION}'
    return session
