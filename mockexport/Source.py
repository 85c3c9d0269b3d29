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

from dataclasses import dataclass
from typing import Iterator, Optional

from mockexport.Generator import generateChunk
from mockexport.Settings import CHUNK_SIZE


@dataclass(frozen=True)
class Chunk:
    """One unit of generated content, alive for a single read."""
    globalIndex: int
    data: bytes

    @property
    def sizeBytes(self) -> int:
        return len(self.data)


class ChunkedSourceStream:
    """
    Pull-based producer of one logical file's content.

    Each readChunk() returns the next chunk of at most chunkSize bytes, or None once
    targetSizeBytes have been emitted. The last chunk is truncated so the total is exact.
    The stream is single-use: once exhausted (or closed) it keeps returning None.

    Chunk identifiers are fileIndex * chunkStride + (offset // chunkSize), so streams of
    different files never share an identifier as long as they use the same stride.
    """

    def __init__(self, fileIndex: int, targetSizeBytes: int, chunkStride: Optional[int] = None,
                 chunkSize: int = CHUNK_SIZE):
        if targetSizeBytes < 0:
            raise ValueError(f"Target size cannot be negative: {targetSizeBytes}")

        if chunkSize <= 0:
            raise ValueError(f"Chunk size must be positive: {chunkSize}")

        self.fileIndex = fileIndex
        self.targetSizeBytes = targetSizeBytes
        self.chunkSize = chunkSize

        chunksNeeded = math.ceil(targetSizeBytes / chunkSize)
        if chunkStride is None:
            chunkStride = chunksNeeded
        elif chunkStride < chunksNeeded:
            raise ValueError(f"Chunk stride {chunkStride} is smaller than the {chunksNeeded} chunks needed")
        self.chunkStride = chunkStride

        self.bytesEmitted = 0
        self._closed = False

    @property
    def exhausted(self) -> bool:
        return self._closed or self.bytesEmitted >= self.targetSizeBytes

    def readChunk(self) -> Optional[Chunk]:
        if self.exhausted:
            return None

        thisChunkSize = min(self.chunkSize, self.targetSizeBytes - self.bytesEmitted)
        globalIndex = self.fileIndex * self.chunkStride + self.bytesEmitted // self.chunkSize

        chunk = Chunk(globalIndex, generateChunk(globalIndex, thisChunkSize))
        self.bytesEmitted += thisChunkSize
        return chunk

    def close(self):
        """Abandon the stream; further reads signal end."""
        self._closed = True

    def __iter__(self) -> Iterator[Chunk]:
        return self

    def __next__(self) -> Chunk:
        chunk = self.readChunk()
        if chunk is None:
            raise StopIteration
        return chunk
