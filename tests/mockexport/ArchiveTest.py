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

import io
import struct
import unittest
import zipfile
import zlib

from unittest.mock import patch

from mockexport.Archive import (
    ArchiveState, ArchiveWriter, BufferSink, ContainerIntegrityError, calculateArchiveSize
)
from mockexport.Generator import generateChunk

EOCD_SIGNATURE = b'PK\x05\x06'
ZIP64_EOCD_SIGNATURE = b'PK\x06\x06'


def makeEntries(sizes):
    return [(f'data/file_{index:06d}.dat', size) for index, size in enumerate(sizes)]


def writeArchive(sink, entries, **kwargs):
    """Write entries whose content is generated from their index, in 1000 byte pieces."""
    writer = ArchiveWriter(sink, **kwargs)
    for index, (name, size) in enumerate(entries):
        pieces = [generateChunk(index, min(1000, size - start)) for start in range(0, size, 1000)]
        writer.addEntry(name, pieces, size)
    writer.finalize()
    return writer


def expectedContent(index, size):
    return b''.join(generateChunk(index, min(1000, size - start)) for start in range(0, size, 1000))


class ArchiveAssertions:

    def assertValidArchive(self, data, entries):
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            self.assertIsNone(archive.testzip())

            infos = archive.infolist()
            self.assertEqual([info.filename for info in infos], [name for name, _ in entries])

            for index, (info, (name, size)) in enumerate(zip(infos, entries)):
                self.assertEqual(info.file_size, size)
                self.assertEqual(archive.read(name), expectedContent(index, size))


class ArchiveWriterTest(ArchiveAssertions, unittest.TestCase):

    def testStoredDescriptorMode(self):
        entries = makeEntries([0, 1, 999, 2500])
        sink = BufferSink()

        writer = writeArchive(sink, entries)
        data = sink.drain()

        self.assertEqual(writer.state, ArchiveState.DONE)
        self.assertFalse(writer.patchHeaders)
        self.assertEqual(writer.offset, len(data))
        self.assertValidArchive(data, entries)

        # Local header announces a trailing data descriptor
        flags = struct.unpack('<H', data[6:8])[0]
        self.assertTrue(flags & ArchiveWriter.DATA_DESCRIPTOR_FLAG)
        self.assertTrue(flags & ArchiveWriter.UTF8_FLAG)

    def testDeflateDescriptorMode(self):
        entries = makeEntries([5000, 12345])
        sink = BufferSink()

        writeArchive(sink, entries, compression='deflate', compressionLevel=1)
        data = sink.drain()

        self.assertValidArchive(data, entries)
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                self.assertEqual(info.compress_type, zipfile.ZIP_DEFLATED)
                # Repeated markers compress very well
                self.assertLess(info.compress_size, info.file_size)

    def testPatchModeOnSeekableSink(self):
        entries = makeEntries([3000, 10])
        output = io.BytesIO()

        writer = writeArchive(output, entries)
        data = output.getvalue()

        self.assertTrue(writer.patchHeaders)
        self.assertValidArchive(data, entries)

        flags, = struct.unpack('<H', data[6:8])
        self.assertFalse(flags & ArchiveWriter.DATA_DESCRIPTOR_FLAG)

        crc, compressedSize, uncompressedSize = struct.unpack('<III', data[14:26])
        self.assertEqual(crc, zlib.crc32(expectedContent(0, 3000)))
        self.assertEqual(compressedSize, 3000)
        self.assertEqual(uncompressedSize, 3000)

    def testPatchModeAfterExistingContent(self):
        output = io.BytesIO()
        output.write(b'prefix')

        writer = ArchiveWriter(output, patchHeaders=True)
        writer.addEntry('a.txt', [b'hello'], 5)
        writer.finalize()

        # zipfile tolerates data prepended to an archive
        with zipfile.ZipFile(io.BytesIO(output.getvalue())) as archive:
            self.assertEqual(archive.read('a.txt'), b'hello')

    def testPatchModeDeflate(self):
        entries = makeEntries([4000])
        output = io.BytesIO()

        writeArchive(output, entries, compression='deflate')

        self.assertValidArchive(output.getvalue(), entries)

    def testEmptyArchive(self):
        sink = BufferSink()
        writer = ArchiveWriter(sink)

        self.assertEqual(writer.finalize(), 22)
        with zipfile.ZipFile(io.BytesIO(sink.drain())) as archive:
            self.assertEqual(archive.infolist(), [])

    def testUnicodeNameAndDefaultTimestamp(self):
        sink = BufferSink()
        writer = ArchiveWriter(sink)
        writer.addEntry('données/résumé.txt', [b'abc'], 3)
        writer.finalize()

        with zipfile.ZipFile(io.BytesIO(sink.drain())) as archive:
            info = archive.getinfo('données/résumé.txt')
            self.assertEqual(info.date_time, (1980, 1, 1, 0, 0, 0))
            self.assertEqual(archive.read(info), b'abc')

    def testCalculatedSizeMatchesOutput(self):
        for patchHeaders in (False, True):
            for sizes in ([1], [0, 0], [1000, 2001, 7], [12345] * 5):
                with self.subTest(patchHeaders=patchHeaders, sizes=sizes):
                    entries = makeEntries(sizes)
                    output = io.BytesIO()

                    writer = writeArchive(output, entries, patchHeaders=patchHeaders)

                    self.assertEqual(calculateArchiveSize(entries, patchHeaders=patchHeaders), writer.offset)
                    self.assertEqual(len(output.getvalue()), writer.offset)

    def testCalculatedSizeUnknownForDeflate(self):
        self.assertIsNone(calculateArchiveSize(makeEntries([10]), compression='deflate'))

    def testInvalidCompression(self):
        with self.assertRaises(ValueError):
            ArchiveWriter(BufferSink(), compression='bzip2')


class ArchiveIntegrityTest(unittest.TestCase):

    def testShortEntryAborts(self):
        sink = BufferSink()
        writer = ArchiveWriter(sink)

        writer.openEntry('short.dat', 100)
        writer.write(b'x' * 99)

        with self.assertRaises(ContainerIntegrityError):
            writer.closeEntry()

        self.assertEqual(writer.state, ArchiveState.ABORTED)
        with self.assertRaises(ContainerIntegrityError):
            writer.finalize()

        self.assertNotIn(EOCD_SIGNATURE, sink.drain())

    def testOverflowingEntryAborts(self):
        writer = ArchiveWriter(BufferSink())
        writer.openEntry('long.dat', 10)

        with self.assertRaises(ContainerIntegrityError):
            writer.write(b'x' * 11)
        self.assertEqual(writer.state, ArchiveState.ABORTED)

    def testOperationsInWrongState(self):
        writer = ArchiveWriter(BufferSink())
        with self.assertRaises(ContainerIntegrityError):
            writer.write(b'data')

        writer = ArchiveWriter(BufferSink())
        with self.assertRaises(ContainerIntegrityError):
            writer.closeEntry()

        writer = ArchiveWriter(BufferSink())
        writer.openEntry('a')
        with self.assertRaises(ContainerIntegrityError):
            writer.openEntry('b')

        writer = ArchiveWriter(BufferSink())
        writer.openEntry('a')
        with self.assertRaises(ContainerIntegrityError):
            writer.finalize()

    def testNoWritesAfterDone(self):
        sink = BufferSink()
        writer = ArchiveWriter(sink)
        writer.finalize()
        sink.drain()

        with self.assertRaises(ContainerIntegrityError):
            writer.openEntry('late.dat')
        with self.assertRaises(ContainerIntegrityError):
            writer.finalize()

        self.assertEqual(sink.drain(), b'')

    def testSourceFailureAbortsAndPropagates(self):
        sink = BufferSink()
        writer = ArchiveWriter(sink)

        def failingSource():
            yield b'a' * 10
            raise RuntimeError('source broke')

        with self.assertRaises(RuntimeError):
            writer.addEntry('broken.dat', failingSource(), 20)

        self.assertEqual(writer.state, ArchiveState.ABORTED)
        self.assertIsNone(writer.currentEntry)
        self.assertNotIn(EOCD_SIGNATURE, sink.drain())

    def testSinkFailureAbortsAndPropagates(self):

        class BrokenSink:

            def __init__(self):
                self.writes = 0

            def write(self, data):
                self.writes += 1
                if self.writes > 1:
                    raise BrokenPipeError('client went away')
                return len(data)

        writer = ArchiveWriter(BrokenSink())
        writer.openEntry('a.dat', 10)

        with self.assertRaises(BrokenPipeError):
            writer.write(b'x' * 10)

        self.assertEqual(writer.state, ArchiveState.ABORTED)

    def testAbortIsIdempotent(self):
        writer = ArchiveWriter(BufferSink())
        writer.abort()
        writer.abort()
        self.assertEqual(writer.state, ArchiveState.ABORTED)

    def testClosedEntryBookkeeping(self):
        writer = ArchiveWriter(BufferSink())
        writer.addEntry('one', [b'12345'], 5)
        entry = writer.addEntry('two', [b'678'], 3)

        self.assertEqual(entry.crc, zlib.crc32(b'678'))
        self.assertEqual(entry.uncompressedSize, 3)
        self.assertIsNone(entry.compressor)
        self.assertEqual([e.name for e in writer.entries], ['one', 'two'])
        self.assertEqual(writer.state, ArchiveState.ENTRY_CLOSED)


class Zip64Test(ArchiveAssertions, unittest.TestCase):
    """Zip64 paths exercised with lowered limits instead of multi-gigabyte data."""

    def testLargeEntriesDescriptorMode(self):
        entries = makeEntries([2000, 1500, 10])
        sink = BufferSink()

        with patch('mockexport.Archive.ZIP64_LIMIT', 1000):
            writer = writeArchive(sink, entries)
            expectedSize = calculateArchiveSize(entries)

        data = sink.drain()
        self.assertEqual(expectedSize, len(data))
        self.assertTrue(writer.entries[0].zip64)
        self.assertFalse(writer.entries[2].zip64)
        self.assertIn(ZIP64_EOCD_SIGNATURE, data)
        self.assertValidArchive(data, entries)

    def testLargeEntriesPatchMode(self):
        entries = makeEntries([2000, 1500])
        output = io.BytesIO()

        with patch('mockexport.Archive.ZIP64_LIMIT', 1000):
            writeArchive(output, entries)
            expectedSize = calculateArchiveSize(entries, patchHeaders=True)

        data = output.getvalue()
        self.assertEqual(expectedSize, len(data))

        # Real sizes live in the local header's Zip64 extra field
        nameLength, extraLength = struct.unpack('<HH', data[26:30])
        self.assertEqual(extraLength, 20)
        extraStart = 30 + nameLength
        tag, size, uncompressedSize, compressedSize = struct.unpack('<HHQQ', data[extraStart:extraStart + 20])
        self.assertEqual((tag, size, uncompressedSize, compressedSize), (1, 16, 2000, 2000))

        self.assertValidArchive(data, entries)

    def testManyEntries(self):
        entries = makeEntries([1, 2, 3, 4])
        sink = BufferSink()

        with patch('mockexport.Archive.ZIP_FILECOUNT_LIMIT', 3):
            writeArchive(sink, entries)

        data = sink.drain()
        self.assertIn(ZIP64_EOCD_SIGNATURE, data)
        self.assertValidArchive(data, entries)

    def testUndeclaredLargeEntryFails(self):
        writer = ArchiveWriter(BufferSink())

        with patch('mockexport.Archive.ZIP64_LIMIT', 100):
            writer.openEntry('unknown-size.dat')
            writer.write(b'x' * 200)

            with self.assertRaises(ContainerIntegrityError):
                writer.closeEntry()

        self.assertEqual(writer.state, ArchiveState.ABORTED)

    def testDeflateReservesZip64Early(self):
        with patch('mockexport.Archive.ZIP64_LIMIT', 1000):
            self.assertTrue(ArchiveWriter.entryNeedsZip64(990, 'deflate'))
            self.assertFalse(ArchiveWriter.entryNeedsZip64(990, 'store'))
            self.assertFalse(ArchiveWriter.entryNeedsZip64(None, 'store'))


if __name__ == '__main__':
    unittest.main()
