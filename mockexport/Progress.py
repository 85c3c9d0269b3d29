#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# MockExport - Slow, large, synthetic export downloads
# Copyright (C) 2024-2025 MockExport contributors
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

from tqdm import tqdm

from mockexport.Kernel import getLogger
from mockexport.Utils import formatSize, formatDuration

logger = getLogger(__name__)


class SizeTqdm(tqdm):
    """tqdm bar that renders sizes and speed with formatSize."""

    def __init__(self, *args, sizeFormatter=None, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize
        super().__init__(*args, unit='B', unit_scale=False, **kwargs)

    @property
    def format_dict(self):
        d = super().format_dict

        rate = d.get('rate', 0) or 0
        d['rate_fmt'] = f"{self.sizeFormatter(int(rate))}/sec" if rate > 0 else "0/sec"
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        # Deflate archives have no size known up front
        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d

    def __bool__(self):
        return hasattr(self, 'n')


class Progress:
    """
    Transfer progress for one archive, reported either as a tqdm bar (CLI commands)
    or as periodic log lines (server downloads, where many run at once).
    """

    def __init__(
        self,
        totalSize=None,
        description='Progress',
        sizeFormatter=None,
        loggerCallback=None,
        logInterval=2.0,
        useBar=False
    ):
        self.totalSize = totalSize or None
        self.description = description
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback or logger.info
        self.logInterval = logInterval
        self.useBar = useBar

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = 0
        self.finished = False

        self.pbar = None
        if self.useBar:
            if self.totalSize is None:
                barFormat = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]'
            else:
                barFormat = '{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'

            self.pbar = SizeTqdm(
                total=self.totalSize,
                desc=description,
                sizeFormatter=self.sizeFormatter,
                leave=True,
                ncols=100,
                bar_format=barFormat,
            )

    def update(self, bytesTransferred, forceLog=False):
        """Record the total number of bytes transferred so far."""
        increment = bytesTransferred - self.transferred
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self.pbar is not None:
            if increment > 0:
                self.pbar.update(increment)
        elif forceLog or (currentTime - self.lastProgressTime) >= self.logInterval:
            self._logProgress(currentTime)

    def advance(self, byteCount):
        self.update(self.transferred + byteCount)

    def _logProgress(self, currentTime):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes
        speed = bytesDelta / timeDelta if timeDelta > 0 else 0

        message = f'{self.description}: {self.sizeFormatter(self.transferred)}'
        if self.totalSize:
            message += f'/{self.sizeFormatter(self.totalSize)} ({self.getPercentage():.2f}%)'
        message += f', {self.sizeFormatter(int(speed))}/sec'

        self.loggerCallback(message)

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def getPercentage(self):
        return (self.transferred * 100.0 / self.totalSize) if self.totalSize else 0

    def getElapsedTime(self):
        return time.monotonic() - self.startTime

    def getAverageSpeed(self):
        """Average bytes per second since the transfer started."""
        elapsed = self.getElapsedTime()
        return self.transferred / elapsed if elapsed > 0 else 0

    def summary(self):
        """One line describing the finished (or interrupted) transfer."""
        return (
            f'{self.sizeFormatter(self.transferred)} in {formatDuration(self.getElapsedTime())} '
            f'({self.sizeFormatter(int(self.getAverageSpeed()))}/sec)'
        )

    def finish(self, complete=True):
        """
        Close the bar, or log the final line when no bar is shown.

        Args:
            complete: False leaves the bar at its current position (interrupted transfer)
        """
        if self.finished:
            return
        self.finished = True

        if self.pbar is not None:
            try:
                if complete and self.pbar.total:
                    remaining = self.pbar.total - self.pbar.n
                    if remaining > 0:
                        self.pbar.update(remaining)

                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logger.debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None
        elif not self.useBar:
            self._logProgress(time.monotonic())

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finish(complete=excType is None)
