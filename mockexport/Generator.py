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

"""
Deterministic synthetic content.

Every chunk is a pure function of (chunkIndex, sizeBytes): the marker text
"Chunk <index> - " repeated and cut to exactly sizeBytes. Nothing is random and
nothing depends on previously generated chunks, so calls are safe from any thread.
"""

CHUNK_MARKER = 'Chunk {index} - '


def makeMarker(chunkIndex: int) -> bytes:
    return CHUNK_MARKER.format(index=chunkIndex).encode('ascii')


def generateChunk(chunkIndex: int, sizeBytes: int) -> bytes:
    """
    Generate exactly sizeBytes of content for the given logical chunk index.

    Args:
        chunkIndex: Globally unique chunk identifier embedded in the content
        sizeBytes: Number of bytes to produce (callers cap this at the chunk size)

    Returns:
        bytes: Repeated marker text truncated to sizeBytes
    """
    if sizeBytes <= 0:
        return b''

    marker = makeMarker(chunkIndex)
    repeats = sizeBytes // len(marker) + 1
    return (marker * repeats)[:sizeBytes]
