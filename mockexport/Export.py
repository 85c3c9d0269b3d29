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

import math
import re
import time

from dataclasses import dataclass
from typing import Iterator, List, Optional

from mockexport.Archive import ArchiveWriter, ArchiveState, BufferSink, calculateArchiveSize
from mockexport.Kernel import getLogger, ExportEvent
from mockexport.Settings import ServerSettings, CHUNK_SIZE, COMPRESSION_STORE, COMPRESSIONS
from mockexport.Source import ChunkedSourceStream
from mockexport.Throttle import createThrottledSink
from mockexport.Utils import formatSize, formatDuration, ONE_KB, ONE_MB, ONE_GB

EXPORT_ID_PATTERN = re.compile(r'^[A-Za-z0-9._-]{1,128}$')
ENTRY_NAME_TEMPLATE = 'data/file_{index:06d}.dat'
CONTENT_TYPE = 'application/zip'

logger = getLogger(__name__)


class InvalidRequestError(ValueError):
    """Request parameters rejected before any response byte is sent."""
    pass


class GenerationAbort(RuntimeError):
    """The sink failed or the client went away; the export cannot be completed."""
    pass


@dataclass(frozen=True)
class GenerationRequest:
    """Everything that determines one export archive."""
    exportId: str
    totalSizeBytes: int
    startupDelay: float = 0.0  # Seconds
    rateLimitBytesPerSec: int = 0  # 0 = unlimited
    compression: str = COMPRESSION_STORE

    def __post_init__(self):
        if not isinstance(self.exportId, str) or not EXPORT_ID_PATTERN.match(self.exportId):
            raise InvalidRequestError(f"Invalid export id: {self.exportId!r}")

        if self.totalSizeBytes <= 0:
            raise InvalidRequestError(f"Size must be positive, got {self.totalSizeBytes} bytes")

        if self.startupDelay < 0:
            raise InvalidRequestError(f"Delay cannot be negative, got {self.startupDelay}s")

        if self.rateLimitBytesPerSec < 0:
            raise InvalidRequestError(f"Throttle cannot be negative, got {self.rateLimitBytesPerSec} bytes/s")

        if self.compression not in COMPRESSIONS:
            raise InvalidRequestError(f"Invalid compression {self.compression!r}, expected one of {COMPRESSIONS}")

    @classmethod
    def create(cls, exportId, sizeMB, delayMs=0, throttleKBps=0, compression=None, settings=None):
        """Build a request from user-facing units (MB, ms, KB/s), enforcing the settings' limits."""
        settings = settings or ServerSettings()

        if not 0 < sizeMB <= settings.maxSizeMB:
            raise InvalidRequestError(f"sizeMB must be between 1 and {settings.maxSizeMB}, got {sizeMB}")

        if not 0 <= delayMs <= settings.maxDelayMs:
            raise InvalidRequestError(f"delay must be between 0 and {settings.maxDelayMs} ms, got {delayMs}")

        if not 0 <= throttleKBps <= settings.maxThrottleKBps:
            raise InvalidRequestError(
                f"throttleKBps must be between 0 and {settings.maxThrottleKBps}, got {throttleKBps}"
            )

        return cls(
            exportId=exportId,
            totalSizeBytes=int(sizeMB) * ONE_MB,
            startupDelay=delayMs / 1000.0,
            rateLimitBytesPerSec=throttleKBps * ONE_KB,
            compression=(compression or settings.compression).lower(),
        )

    @classmethod
    def fromQuery(cls, exportId, query, settings=None):
        """
        Build a request from parsed query parameters (as returned by parse_qs).
        Absent parameters fall back to the server defaults.
        """
        settings = settings or ServerSettings()

        def param(name, default):
            values = query.get(name)
            if not values:
                return default

            value = values[-1] if isinstance(values, (list, tuple)) else values
            if value == '':
                return default

            try:
                return int(value)
            except (TypeError, ValueError):
                raise InvalidRequestError(f"Query parameter '{name}' must be an integer, got {value!r}")

        compression = query.get('compression')
        if isinstance(compression, (list, tuple)):
            compression = compression[-1] if compression else None

        return cls.create(
            exportId,
            sizeMB=param('sizeMB', settings.defaultSizeMB),
            delayMs=param('delay', settings.defaultDelayMs),
            throttleKBps=param('throttleKBps', settings.defaultThrottleKBps),
            compression=compression or None,
            settings=settings,
        )

    @property
    def contentName(self):
        return f'export-{self.exportId}.zip'


@dataclass(frozen=True)
class LogicalFile:
    index: int
    name: str
    targetSizeBytes: int


def partitionFiles(totalSizeBytes: int, filesPerGB: int = 100) -> List[LogicalFile]:
    """
    Split totalSizeBytes into ceil(GB * filesPerGB) files (at least one).

    Sizes differ by at most one byte, the larger ones first, and always add up to
    totalSizeBytes exactly.
    """
    if totalSizeBytes <= 0:
        raise InvalidRequestError(f"Size must be positive, got {totalSizeBytes} bytes")

    fileCount = max(1, math.ceil(totalSizeBytes * filesPerGB / ONE_GB))
    fileCount = min(fileCount, totalSizeBytes)

    baseSize, remainder = divmod(totalSizeBytes, fileCount)
    return [
        LogicalFile(index, ENTRY_NAME_TEMPLATE.format(index=index), baseSize + (1 if index < remainder else 0))
        for index in range(fileCount)
    ]


class ExportPipeline:
    """
    Wires one request's stages together:

        N x ChunkedSourceStream -> ArchiveWriter -> [Throttle] -> sink

    Everything runs in the caller's thread as a strict pull chain; at most one chunk of
    content is alive at any time, whatever the requested size.
    """

    def __init__(self, request: GenerationRequest, settings: Optional[ServerSettings] = None):
        self.request = request
        self.settings = settings or ServerSettings()

        self.files = partitionFiles(request.totalSizeBytes, self.settings.filesPerGB)

        # Same stride for every file keeps chunk identifiers unique across the archive
        self.chunkStride = max(1, math.ceil(max(f.targetSizeBytes for f in self.files) / CHUNK_SIZE))

        self.filesWritten = 0
        self.bytesSent = 0
        self._size = calculateArchiveSize(
            ((f.name, f.targetSizeBytes) for f in self.files), compression=request.compression
        )

        self._progressStep = math.ceil(len(self.files) / 10)

    @property
    def contentName(self):
        return self.request.contentName

    @property
    def contentType(self):
        return CONTENT_TYPE

    @property
    def size(self) -> Optional[int]:
        """Exact archive length for stored archives, None when compressed."""
        return self._size

    @property
    def estimatedSeconds(self) -> Optional[float]:
        """Transfer time implied by the throttle, None when unthrottled."""
        if not self.request.rateLimitBytesPerSec:
            return None
        return (self.size or self.request.totalSizeBytes) / self.request.rateLimitBytesPerSec

    def describe(self):
        """Log the request the way it will be served."""
        request = self.request
        throttle = formatSize(request.rateLimitBytesPerSec) + '/sec' if request.rateLimitBytesPerSec else 'disabled'

        logger.info(f'Export requested: {request.exportId}')
        logger.info(f'  Initial delay: {int(request.startupDelay * 1000)}ms ({formatDuration(request.startupDelay)})')
        logger.info(f'  Size: {formatSize(request.totalSizeBytes)} ({request.totalSizeBytes} bytes)')
        logger.info(f'  Throttle: {throttle}')
        logger.info(f'  Compression: {request.compression}')

        if self.estimatedSeconds is not None:
            logger.info(f'  Estimated download time: {formatDuration(self.estimatedSeconds)}')

        averageSize = request.totalSizeBytes / len(self.files)
        logger.info(f'  Generating {len(self.files)} files ({formatSize(int(averageSize))} each)')

    def waitStartupDelay(self, wait=None) -> bool:
        """
        Sleep for the request's startup delay before anything is written.

        Args:
            wait: Callable taking a timeout in seconds and returning True to cut the wait
                  short (e.g. threading.Event.wait); defaults to time.sleep

        Returns:
            bool: True when the full delay elapsed, False when it was cut short
        """
        delay = self.request.startupDelay
        if delay <= 0:
            return True

        logger.info(f'[{self.request.exportId}] Waiting {formatDuration(delay)} before starting response')
        if wait is None:
            time.sleep(delay)
            return True

        return not wait(delay)

    def _iterWrites(self, writer: ArchiveWriter) -> Iterator[int]:
        """
        Drive the writer through every file, yielding the archive offset after each write.
        Abandoning the generator before it finishes aborts the writer.
        """
        try:
            for logicalFile in self.files:
                stream = ChunkedSourceStream(logicalFile.index, logicalFile.targetSizeBytes, self.chunkStride)

                writer.openEntry(logicalFile.name, logicalFile.targetSizeBytes)
                for chunk in stream:
                    writer.write(chunk.data)
                    yield writer.offset
                writer.closeEntry()

                self.filesWritten += 1
                self._logFileProgress()
                yield writer.offset

            writer.finalize()
            logger.info(f'[{self.request.exportId}] Archive finalized: {formatSize(writer.offset)}')
            yield writer.offset
        finally:
            if writer.state != ArchiveState.DONE:
                writer.abort()

    def _logFileProgress(self):
        total = len(self.files)
        if total > 10 and self.filesWritten % self._progressStep == 0 and self.filesWritten < total:
            percentage = self.filesWritten * 100 // total
            logger.info(f'[{self.request.exportId}] Progress: {percentage}% ({self.filesWritten}/{total} files)')

    def _createWriter(self, sink, patchHeaders):
        return ArchiveWriter(
            sink,
            compression=self.request.compression,
            compressionLevel=self.settings.compressionLevel,
            patchHeaders=patchHeaders,
        )

    def iterChunks(self) -> Iterator[bytes]:
        """
        Yield the archive as a sequence of byte strings (descriptor mode).
        Closing the iterator early stops generation and aborts the archive.
        """
        buffer = BufferSink()
        writer = self._createWriter(buffer, patchHeaders=False)

        for _ in self._iterWrites(writer):
            data = buffer.drain()
            if data:
                self.bytesSent += len(data)
                yield data

    def writeTo(self, fileobj, progress=None) -> int:
        """
        Write the whole archive to a file object, unthrottled. Seekable files get their
        local headers patched in place; anything else gets data descriptors.

        Returns:
            int: Archive size in bytes
        """
        writer = self._createWriter(fileobj, patchHeaders=None)

        for offset in self._iterWrites(writer):
            self.bytesSent = offset
            if progress:
                progress.update(offset)

        return writer.offset

    def streamTo(self, sink, progress=None, origin=None) -> int:
        """
        Stream the archive to an append-only sink through the rate limiter, emitting the
        download lifecycle events.

        Args:
            origin: Passed with every event so observers can tell whose download it is

        Raises:
            GenerationAbort: The sink failed (client disconnect, reset, closed pipe)

        Returns:
            int: Archive size in bytes
        """
        request = self.request
        writer = self._createWriter(createThrottledSink(sink, request.rateLimitBytesPerSec), patchHeaders=False)

        ExportEvent.downloadStart.trigger(origin=origin, exportId=request.exportId, size=self.size)

        try:
            for offset in self._iterWrites(writer):
                self.bytesSent = offset
                if progress:
                    progress.update(offset)
        except OSError as e:
            logger.warning(
                f'[{request.exportId}] Download aborted after {formatSize(self.bytesSent)} '
                f'({self.filesWritten}/{len(self.files)} files): {e!r}'
            )
            ExportEvent.downloadAbort.trigger(
                origin=origin, exportId=request.exportId, bytesSent=self.bytesSent, reason=repr(e)
            )
            raise GenerationAbort(f'Export {request.exportId} aborted: {e}') from e
        except BaseException as e:
            ExportEvent.downloadAbort.trigger(
                origin=origin, exportId=request.exportId, bytesSent=self.bytesSent, reason=repr(e)
            )
            raise

        ExportEvent.downloadComplete.trigger(origin=origin, exportId=request.exportId, bytesSent=self.bytesSent)
        return writer.offset
