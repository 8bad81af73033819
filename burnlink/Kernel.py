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
import logging

# Sentry is wired into every logger but stays silent unless BURNLINK_SENTRY_DSN is set.
import sentry_sdk

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('BURNLINK_LOGGING_LEVEL'):
    _envLevel = LOG_LEVEL_MAPPING.get(os.getenv('BURNLINK_LOGGING_LEVEL').upper())
    if _envLevel is not None:
        configureGlobalLogLevel(_envLevel)


def _initSentry():
    """Initialize Sentry once if a DSN is configured, returns True when this call initialized it."""
    if sentry_sdk.get_client().is_active():
        return False

    sentryDsn = os.getenv('BURNLINK_SENTRY_DSN')
    if not sentryDsn:
        return False

    # Suppress "sentry is attempting to send pending events..." on exit
    sentryAtexit.default_callback = lambda pending, timeout: None

    sentry_sdk.init(
        dsn=sentryDsn,
        release=PUBLIC_VERSION,
        default_integrations=False,
        integrations=[
            LoggingIntegration(),
            sentryAtexit.AtexitIntegration(),
        ],
    )
    return True


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration.

    The returned logger carries the version in its extra context. Sentry only
    receives records when BURNLINK_SENTRY_DSN was set at startup.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryInitialized = _initSentry()

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')

            syslog = SentryHandler()
            syslog.setFormatter(formatter)
            logger.addHandler(syslog)

        adapter = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryInitialized:
            adapter.debug('Sentry initialized')

        return adapter

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, log the error and continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


def classForName(qualifiedName):
    """
    Get a class or module by its fully qualified name.
    """
    if not isinstance(qualifiedName, str):
        qualifiedName = str(qualifiedName)

    if '.' not in qualifiedName:
        return __import__(qualifiedName)

    parts = qualifiedName.split('.')
    moduleName = ".".join(parts[:-1])
    module = __import__(moduleName, fromlist=[parts[-1]])

    try:
        return getattr(module, parts[-1])
    except AttributeError:
        raise ImportError(f"Unable to import '{qualifiedName}'.")


def shortId(transferId, length=8):
    """Truncated identifier for log lines; full ids are bearer material in staged mode."""
    if not transferId:
        return '-'
    return f'{transferId[:length]}..'
