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

import unittest

from mockexport.Generator import generateChunk, makeMarker
from mockexport.Utils import ONE_MB


class GeneratorTest(unittest.TestCase):

    def testExactSize(self):
        for size in (1, 7, 15, 16, 17, 1000, ONE_MB):
            with self.subTest(size=size):
                self.assertEqual(len(generateChunk(3, size)), size)

    def testZeroSize(self):
        self.assertEqual(generateChunk(0, 0), b'')
        self.assertEqual(generateChunk(0, -5), b'')

    def testDeterministic(self):
        self.assertEqual(generateChunk(42, 5000), generateChunk(42, 5000))

    def testContentRepeatsMarker(self):
        data = generateChunk(12, 100)

        marker = b'Chunk 12 - '
        self.assertEqual(makeMarker(12), marker)
        self.assertTrue(data.startswith(marker * 9))
        self.assertEqual(data, (marker * 10)[:100])

    def testIndicesProduceDifferentContent(self):
        self.assertNotEqual(generateChunk(1, 1024), generateChunk(2, 1024))

    def testPrefixStable(self):
        """A shorter chunk is a prefix of a longer one with the same index."""
        self.assertEqual(generateChunk(9, 4096)[:100], generateChunk(9, 100))


if __name__ == '__main__':
    unittest.main()
