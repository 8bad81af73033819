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


import time
import logging

from tqdm import tqdm

from burnlink.Utils import formatSize, ONE_MB


class BitmathTqdm(tqdm):
    """tqdm bar that renders sizes and speed through formatSize (bitmath)"""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'
            )

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'
        return d

    def __bool__(self):
        # tqdm raises on bool() when total is None
        return hasattr(self, 'n')


class Progress:
    """Byte progress for one transfer, as a tqdm bar or as periodic log lines"""

    def __init__(self, totalSize, sizeFormatter=None, loggerCallback=print, logInterval=2.0, useBar=False, desc=None):
        self.totalSize = totalSize
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.useBar = useBar
        self.desc = desc or 'Progress'

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = 0

        self.pbar = None
        if self.useBar:
            self._initProgressBar()

    def _initProgressBar(self):
        # Unknown sizes (0) show bytes only, without percentage
        total = None if self.totalSize == 0 else self.totalSize

        if self.totalSize == 0:
            barFormat = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]{postfix}'
        else:
            barFormat = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]{postfix}'
            )

        self.pbar = BitmathTqdm(
            total=total,
            desc=self.desc,
            sizeFormatter=self.sizeFormatter,
            leave=True,
            ncols=100,
            ascii=False,
            bar_format=barFormat
        )

    def update(self, bytesTransferred, forceLog=False, extraText=""):
        previousTransferred = self.transferred
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self.useBar and self.pbar:
            self._updateProgressBar(previousTransferred, extraText)
        elif self._shouldLog(forceLog, currentTime):
            self._logProgress(currentTime, extraText)

    def _updateProgressBar(self, previousTransferred, extraText):
        try:
            increment = self.transferred - previousTransferred
            if increment > 0:
                self.pbar.update(increment)

            self.pbar.set_postfix_str(f" {extraText}" if extraText else "")

            if self.totalSize > 0 and self.transferred >= self.totalSize:
                self.finishBar()
        except (ValueError, AttributeError) as e:
            self.loggerCallback(f"Progress bar error: {e}")
            self.useBar = False

    def _shouldLog(self, forceLog, currentTime):
        return (
            forceLog or self.transferred % (5 * ONE_MB) == 0 or
            (currentTime - self.lastProgressTime) >= self.logInterval
        )

    def _logProgress(self, currentTime, extraText):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes

        speedBytesPerSec = bytesDelta / timeDelta if timeDelta > 0 else 0
        percentage = self.getPercentage()

        progressMsg = (
            f'{self.desc}: {self.sizeFormatter(self.transferred)}/{self.sizeFormatter(self.totalSize)} '
            f'({percentage:.2f}%), {self.sizeFormatter(int(speedBytesPerSec))}/sec'
        )
        if extraText:
            progressMsg += f', {extraText}'

        self.loggerCallback(progressMsg)

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def getPercentage(self):
        return (self.transferred * 100.0 / self.totalSize) if self.totalSize > 0 else 0

    def finishBar(self, complete=True):
        """Close the bar, filling it to 100% unless complete is False (failed transfer)"""
        if self.useBar and self.pbar:
            try:
                if complete and self.pbar.total:
                    remaining = self.pbar.total - self.pbar.n
                    if remaining > 0:
                        self.pbar.update(remaining)

                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logging.getLogger(__name__).debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finishBar(complete=excType is None)

    def __del__(self):
        self.finishBar(complete=False)
