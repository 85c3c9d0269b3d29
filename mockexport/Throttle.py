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

from mockexport.Kernel import getLogger

# Largest slice released at once; keeps the output smooth at high rates
MAX_SLICE = 64 * 1024

logger = getLogger(__name__)


class Throttle:
    """
    Write-through sink wrapper that caps throughput at bytesPerSecond.

    Every byte gets a release time on a schedule advancing 1/bytesPerSecond per byte.
    The schedule never starts in the past, so time spent idle (e.g. waiting on a slow
    producer) does not build up credit that could later be spent as a burst.

    Blocking happens in write(), which is what the producer upstream waits on.
    """

    def __init__(self, sink, bytesPerSecond: int, clock=time.monotonic, sleep=time.sleep):
        if bytesPerSecond <= 0:
            raise ValueError(f"Throttle rate must be positive: {bytesPerSecond}")

        self.sink = sink
        self.bytesPerSecond = bytesPerSecond
        self.clock = clock
        self.sleep = sleep

        self.sliceSize = max(1, min(MAX_SLICE, bytesPerSecond // 10))
        self.bytesWritten = 0
        self._releaseAt = None

    def write(self, data):
        view = memoryview(data)

        for start in range(0, len(view), self.sliceSize):
            piece = view[start:start + self.sliceSize]

            now = self.clock()
            if self._releaseAt is None or self._releaseAt < now:
                self._releaseAt = now

            delay = self._releaseAt - now
            if delay > 0:
                self.sleep(delay)

            self.sink.write(piece)
            self.bytesWritten += len(piece)
            self._releaseAt += len(piece) / self.bytesPerSecond

        return len(view)

    def flush(self):
        flush = getattr(self.sink, 'flush', None)
        if flush:
            flush()

    def close(self):
        close = getattr(self.sink, 'close', None)
        if close:
            close()


def createThrottledSink(sink, bytesPerSecond):
    """Wrap sink in a Throttle, or return it unchanged when the rate is 0 (unlimited)."""
    if not bytesPerSecond:
        return sink

    logger.debug(f'Throttling output to {bytesPerSecond} bytes/s')
    return Throttle(sink, bytesPerSecond)
