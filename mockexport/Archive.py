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

import datetime
import struct
import zipfile
import zlib

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterable, Optional

from mockexport.Kernel import getLogger
from mockexport.Settings import COMPRESSION_STORE, COMPRESSION_DEFLATE, COMPRESSIONS

logger = getLogger(__name__)

# Sizes and offsets at or above this need Zip64 records
ZIP64_LIMIT = 0xFFFFFFFF
ZIP_FILECOUNT_LIMIT = 0xFFFF

# Value of a classic field whose real value lives in a Zip64 record
ZIP64_MARKER = 0xFFFFFFFF


def _clamp(value, limit, marker):
    return marker if value >= limit else value


class ContainerIntegrityError(RuntimeError):
    """Raised when the archive would come out corrupt; the writer is aborted first."""
    pass


class ArchiveState(Enum):
    IDLE = auto()
    WRITING_ENTRY = auto()
    ENTRY_CLOSED = auto()
    FINALIZING = auto()
    DONE = auto()
    ABORTED = auto()


@dataclass
class ArchiveEntry:
    """Bookkeeping for one entry, from openEntry() until the central directory is written."""
    name: str
    nameBytes: bytes
    headerOffset: int
    compressionMethod: int
    declaredSize: Optional[int] = None
    zip64: bool = False
    crc: int = 0
    compressedSize: int = 0
    uncompressedSize: int = 0
    compressor: object = field(default=None, repr=False)


class BufferSink:
    """Append-only in-memory sink; the owner drains it after every write."""

    def __init__(self):
        self._buffer = bytearray()

    def write(self, data):
        self._buffer.extend(data)
        return len(data)

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class ArchiveWriter:
    """
    Writes a ZIP archive entry by entry to a sink, holding only the open entry's state
    and the central directory records of closed entries.

    State machine:
        IDLE -> WRITING_ENTRY -> ENTRY_CLOSED -> (WRITING_ENTRY ...) -> FINALIZING -> DONE
    Any failure moves the writer to ABORTED, after which nothing more is written; in
    particular no central directory is produced, so a failed archive never looks complete.

    Two ways of recording an entry's CRC and sizes:
    - descriptor mode (append-only sinks such as sockets): the local header carries zeros
      and general purpose bit 3, and a data descriptor follows the entry data.
    - patch mode (seekable sinks such as local files): the local header is rewritten in
      place once the entry is closed.
    """

    # ZIP format constants (PKZIP APPNOTE.TXT)
    LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0]  # 0x04034b50
    CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0]  # 0x02014b50
    END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0]  # 0x06054b50
    ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = 0x06064b50  # ZIP64 extension (not in zipfile module)
    ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = 0x07064b50  # ZIP64 extension (not in zipfile module)
    DATA_DESCRIPTOR_SIGNATURE = 0x08074b50

    STORE = zipfile.ZIP_STORED  # 0
    DEFLATE = zipfile.ZIP_DEFLATED  # 8

    # General purpose bit flags
    DATA_DESCRIPTOR_FLAG = 0x0008  # Bit 3: sizes/CRC in data descriptor
    UTF8_FLAG = 0x0800  # Bit 11: filename and comment UTF-8 encoded

    ZIP64_EXTRA_TAG = 0x0001
    FILE_ATTRIBUTE_ARCHIVE = 0x20

    LOCAL_FILE_HEADER_CRC_OFFSET = 14
    LOCAL_FILE_HEADER_LENGTH = 30

    def __init__(self, sink, compression=COMPRESSION_STORE, compressionLevel=1, patchHeaders=None, mtime=None):
        """
        Args:
            sink: Object with write(bytes); seek()/tell() are needed for patch mode
            compression: "store" (pass-through) or "deflate"
            compressionLevel: zlib level for deflate, 1 favours speed
            patchHeaders: True for patch mode, False for descriptor mode,
                          None to pick patch mode when the sink reports seekable()
            mtime: Unix timestamp stored for every entry (None = 1980-01-01)
        """
        if compression not in COMPRESSIONS:
            raise ValueError(f"Invalid compression: {compression}")

        if patchHeaders is None:
            seekable = getattr(sink, 'seekable', None)
            patchHeaders = bool(seekable and seekable())

        self.sink = sink
        self.compression = compression
        self.compressionLevel = compressionLevel
        self.patchHeaders = patchHeaders
        self.dosTime, self.dosDate = self._unixToDosTime(mtime)

        self._base = sink.tell() if patchHeaders else 0
        self._offset = 0
        self._entries = []
        self._current = None
        self._state = ArchiveState.IDLE

    @property
    def state(self) -> ArchiveState:
        return self._state

    @property
    def offset(self) -> int:
        """Number of archive bytes written so far."""
        return self._offset

    @property
    def entries(self):
        """Closed entries, in archive order."""
        return list(self._entries)

    @property
    def currentEntry(self) -> Optional[ArchiveEntry]:
        return self._current

    @staticmethod
    def _unixToDosTime(timestamp):
        """
        Convert Unix timestamp to DOS time and date format

        Returns:
            tuple: (dosTime, dosDate) - both as 16-bit integers
        """
        if timestamp is None or timestamp <= 0:
            # Return default date: 1980-01-01 00:00:00
            return 0, (1 << 5) | 1

        try:
            dt = datetime.datetime.fromtimestamp(timestamp)

            # DOS date range is 1980-2107
            year = max(1980, min(2107, dt.year))

            dosTime = ((dt.hour & 0x1F) << 11) | ((dt.minute & 0x3F) << 5) | ((dt.second // 2) & 0x1F)
            dosDate = (((year - 1980) & 0x7F) << 9) | ((dt.month & 0x0F) << 5) | (dt.day & 0x1F)

            return dosTime, dosDate
        except (ValueError, OSError, OverflowError):
            return 0, (1 << 5) | 1

    @classmethod
    def entryNeedsZip64(cls, size: Optional[int], compression: str) -> bool:
        """Whether Zip64 fields must be reserved up front for an entry of the declared size."""
        if size is None:
            return False

        # Deflate output can be slightly larger than its input
        worstCase = size if compression == COMPRESSION_STORE else size * 1.05
        return worstCase >= ZIP64_LIMIT

    # Entry lifecycle
    def openEntry(self, name: str, size: Optional[int] = None) -> ArchiveEntry:
        """
        Start a new entry and write its local file header.

        Args:
            name: Entry path inside the archive
            size: Expected uncompressed size; closeEntry() fails if it does not match
        """
        if self._state not in (ArchiveState.IDLE, ArchiveState.ENTRY_CLOSED):
            self._fail(f"Cannot open entry '{name}' in state {self._state.name}")

        nameBytes = name.encode('utf-8')
        if not nameBytes or len(nameBytes) > 0xFFFF:
            self._fail(f"Invalid entry name length for '{name}'")

        entry = ArchiveEntry(
            name=name,
            nameBytes=nameBytes,
            headerOffset=self._offset,
            compressionMethod=self.DEFLATE if self.compression == COMPRESSION_DEFLATE else self.STORE,
            declaredSize=size,
            zip64=self.entryNeedsZip64(size, self.compression),
        )

        if self.compression == COMPRESSION_DEFLATE:
            entry.compressor = zlib.compressobj(self.compressionLevel, zlib.DEFLATED, -zlib.MAX_WBITS)

        self._current = entry
        self._state = ArchiveState.WRITING_ENTRY
        self._emit(
            self._makeLocalFileHeader(entry, not self.patchHeaders, dosTime=self.dosTime, dosDate=self.dosDate)
        )

        return entry

    def write(self, data):
        """Append uncompressed data to the open entry."""
        if self._state != ArchiveState.WRITING_ENTRY:
            self._fail(f"Cannot write data in state {self._state.name}")

        if not data:
            return

        entry = self._current
        entry.crc = zlib.crc32(data, entry.crc)
        entry.uncompressedSize += len(data)

        if entry.declaredSize is not None and entry.uncompressedSize > entry.declaredSize:
            self._fail(
                f"Entry '{entry.name}' overflowed its declared size: "
                f"{entry.uncompressedSize} > {entry.declaredSize}"
            )

        if entry.compressor:
            compressed = entry.compressor.compress(data)
            if compressed:
                entry.compressedSize += len(compressed)
                self._emit(compressed)
        else:
            entry.compressedSize += len(data)
            self._emit(data)

    def closeEntry(self) -> ArchiveEntry:
        """Finish the open entry: flush, verify its size, then record CRC/sizes."""
        if self._state != ArchiveState.WRITING_ENTRY:
            self._fail(f"Cannot close entry in state {self._state.name}")

        entry = self._current

        if entry.compressor:
            compressed = entry.compressor.flush()
            entry.compressor = None
            if compressed:
                entry.compressedSize += len(compressed)
                self._emit(compressed)

        if entry.declaredSize is not None and entry.uncompressedSize != entry.declaredSize:
            self._fail(
                f"Entry '{entry.name}' closed with {entry.uncompressedSize} bytes, "
                f"expected {entry.declaredSize}"
            )

        if not entry.zip64 and (entry.compressedSize >= ZIP64_LIMIT or entry.uncompressedSize >= ZIP64_LIMIT):
            self._fail(f"Entry '{entry.name}' exceeds 4 GiB without a declared size")

        if self.patchHeaders:
            self._patchLocalFileHeader(entry)
        else:
            self._emit(self._makeDataDescriptor(entry))

        self._entries.append(entry)
        self._current = None
        self._state = ArchiveState.ENTRY_CLOSED

        logger.debug(
            f"Closed entry {entry.name}: {entry.uncompressedSize} bytes "
            f"({entry.compressedSize} stored), crc={entry.crc:08x}"
        )
        return entry

    def addEntry(self, name: str, chunks: Iterable, size: Optional[int] = None) -> ArchiveEntry:
        """
        Write a whole entry from an iterable of bytes (or objects with a .data attribute).
        Any exception raised by the iterable aborts the archive and propagates.
        """
        self.openEntry(name, size)

        try:
            for chunk in chunks:
                self.write(getattr(chunk, 'data', chunk))
        except BaseException:
            self.abort()
            raise

        return self.closeEntry()

    def finalize(self) -> int:
        """
        Write the central directory and end records.

        Returns:
            int: Total archive size in bytes
        """
        if self._state == ArchiveState.WRITING_ENTRY:
            self._fail(f"Cannot finalize while entry '{self._current.name}' is open")

        if self._state not in (ArchiveState.IDLE, ArchiveState.ENTRY_CLOSED):
            raise ContainerIntegrityError(f"Cannot finalize in state {self._state.name}")

        self._state = ArchiveState.FINALIZING

        centralDirStart = self._offset
        for entry in self._entries:
            self._emit(
                self._makeCentralDirHeader(entry, not self.patchHeaders, dosTime=self.dosTime, dosDate=self.dosDate)
            )
        centralDirSize = self._offset - centralDirStart

        self._emit(self._makeEndRecords(len(self._entries), centralDirSize, centralDirStart, self._offset))

        self._state = ArchiveState.DONE

        logger.debug(f"Archive finalized: {len(self._entries)} entries, {self._offset} bytes")
        return self._offset

    def abort(self):
        """Stop writing for good. Safe to call more than once."""
        if self._state == ArchiveState.ABORTED:
            return

        if self._state != ArchiveState.DONE:
            logger.debug(f"Archive aborted in state {self._state.name} after {self._offset} bytes")

        self._state = ArchiveState.ABORTED
        if self._current is not None:
            self._current.compressor = None
            self._current = None

    def _fail(self, message):
        self.abort()
        raise ContainerIntegrityError(message)

    def _emit(self, data):
        try:
            self.sink.write(data)
        except BaseException:
            self.abort()
            raise

        self._offset += len(data)

    def _patchLocalFileHeader(self, entry: ArchiveEntry):
        """Rewrite CRC and sizes of an already written local header (seekable sinks only)."""
        headerPosition = self._base + entry.headerOffset

        try:
            self.sink.seek(headerPosition + self.LOCAL_FILE_HEADER_CRC_OFFSET)
            if entry.zip64:
                self.sink.write(struct.pack('<III', entry.crc & 0xFFFFFFFF, ZIP64_MARKER, ZIP64_MARKER))

                # Zip64 extra field data follows the file name and the 4-byte extra header
                self.sink.seek(headerPosition + self.LOCAL_FILE_HEADER_LENGTH + len(entry.nameBytes) + 4)
                self.sink.write(struct.pack('<QQ', entry.uncompressedSize, entry.compressedSize))
            else:
                self.sink.write(
                    struct.pack('<III', entry.crc & 0xFFFFFFFF, entry.compressedSize, entry.uncompressedSize)
                )

            self.sink.seek(self._base + self._offset)
        except BaseException:
            self.abort()
            raise

    # Record builders
    @classmethod
    def _makeLocalFileHeader(cls, entry: ArchiveEntry, useDescriptor: bool, dosTime=0, dosDate=(1 << 5) | 1):
        """Create ZIP local file header with CRC/sizes left for the descriptor or the patch."""
        flags = cls.UTF8_FLAG
        if useDescriptor:
            flags |= cls.DATA_DESCRIPTOR_FLAG

        versionNeeded = 45 if entry.zip64 else 20

        extraField = b''
        if entry.zip64:
            # Real values land here (patch mode) or in the Zip64 descriptor
            extraField = struct.pack('<HHQQ', cls.ZIP64_EXTRA_TAG, 16, 0, 0)
            sizeField = ZIP64_MARKER
        else:
            sizeField = 0

        header = struct.pack('<I', cls.LOCAL_FILE_HEADER_SIGNATURE)
        header += struct.pack('<H', versionNeeded)  # Version needed to extract
        header += struct.pack('<H', flags)  # General purpose bit flag
        header += struct.pack('<H', entry.compressionMethod)  # Compression method
        header += struct.pack('<H', dosTime)  # File last modification time
        header += struct.pack('<H', dosDate)  # File last modification date
        header += struct.pack('<I', 0)  # CRC-32
        header += struct.pack('<I', sizeField)  # Compressed size
        header += struct.pack('<I', sizeField)  # Uncompressed size
        header += struct.pack('<H', len(entry.nameBytes))  # Filename length
        header += struct.pack('<H', len(extraField))  # Extra field length
        header += entry.nameBytes
        header += extraField

        return header

    @classmethod
    def _makeDataDescriptor(cls, entry: ArchiveEntry):
        """Create ZIP data descriptor (Zip64 variant when the local header announced Zip64)"""
        descriptor = struct.pack('<I', cls.DATA_DESCRIPTOR_SIGNATURE)  # Optional signature
        descriptor += struct.pack('<I', entry.crc & 0xFFFFFFFF)

        if entry.zip64:
            descriptor += struct.pack('<Q', entry.compressedSize)
            descriptor += struct.pack('<Q', entry.uncompressedSize)
        else:
            descriptor += struct.pack('<I', entry.compressedSize)
            descriptor += struct.pack('<I', entry.uncompressedSize)

        return descriptor

    @classmethod
    def _makeCentralDirHeader(cls, entry: ArchiveEntry, useDescriptor: bool = True, dosTime=0,
                              dosDate=(1 << 5) | 1):
        """Create ZIP central directory header with Zip64 support"""
        flags = cls.UTF8_FLAG
        if useDescriptor:
            flags |= cls.DATA_DESCRIPTOR_FLAG

        compressedSize = entry.compressedSize
        uncompressedSize = entry.uncompressedSize
        offset = entry.headerOffset

        needsZip64 = (compressedSize >= ZIP64_LIMIT or uncompressedSize >= ZIP64_LIMIT or offset >= ZIP64_LIMIT)

        extraField = b''
        if needsZip64:
            # Fields in order: uncompressed size, compressed size, relative header offset
            extraData = b''
            if uncompressedSize >= ZIP64_LIMIT:
                extraData += struct.pack('<Q', uncompressedSize)
            if compressedSize >= ZIP64_LIMIT:
                extraData += struct.pack('<Q', compressedSize)
            if offset >= ZIP64_LIMIT:
                extraData += struct.pack('<Q', offset)

            extraField = struct.pack('<HH', cls.ZIP64_EXTRA_TAG, len(extraData)) + extraData

        version = 45 if needsZip64 or entry.zip64 else 20

        header = struct.pack('<I', cls.CENTRAL_DIR_SIGNATURE)
        header += struct.pack('<H', version)  # Version made by
        header += struct.pack('<H', version)  # Version needed to extract
        header += struct.pack('<H', flags)  # General purpose bit flag
        header += struct.pack('<H', entry.compressionMethod)  # Compression method
        header += struct.pack('<H', dosTime)  # Last mod file time
        header += struct.pack('<H', dosDate)  # Last mod file date
        header += struct.pack('<I', entry.crc & 0xFFFFFFFF)  # CRC-32
        header += struct.pack('<I', _clamp(compressedSize, ZIP64_LIMIT, ZIP64_MARKER))  # Compressed size
        header += struct.pack('<I', _clamp(uncompressedSize, ZIP64_LIMIT, ZIP64_MARKER))  # Uncompressed size
        header += struct.pack('<H', len(entry.nameBytes))  # Filename length
        header += struct.pack('<H', len(extraField))  # Extra field length
        header += struct.pack('<H', 0)  # File comment length
        header += struct.pack('<H', 0)  # Disk number start
        header += struct.pack('<H', 0)  # Internal file attributes
        header += struct.pack('<I', cls.FILE_ATTRIBUTE_ARCHIVE)  # External file attributes
        header += struct.pack('<I', _clamp(offset, ZIP64_LIMIT, ZIP64_MARKER))  # Relative offset of local header
        header += entry.nameBytes
        header += extraField

        return header

    @classmethod
    def _makeEndRecords(cls, entryCount: int, centralDirSize: int, centralDirStart: int, offset: int):
        """
        Create the end of central directory record, preceded by the Zip64 end record and
        locator when counts, sizes or offsets overflow the classic fields.

        Args:
            offset: Archive offset right after the central directory
        """
        needsZip64 = (
            entryCount >= ZIP_FILECOUNT_LIMIT or centralDirSize >= ZIP64_LIMIT or centralDirStart >= ZIP64_LIMIT or
            offset >= ZIP64_LIMIT
        )

        records = b''
        if needsZip64:
            records += cls._makeZip64EndOfCentralDir(entryCount, centralDirSize, centralDirStart)
            records += cls._makeZip64Locator(offset)

        records += cls._makeEndOfCentralDir(entryCount, centralDirSize, centralDirStart)
        return records

    @classmethod
    def _makeZip64EndOfCentralDir(cls, entryCount: int, centralDirSize: int, centralDirStart: int):
        """Create Zip64 end of central directory record"""
        record = struct.pack('<I', cls.ZIP64_END_OF_CENTRAL_DIR_SIGNATURE)
        record += struct.pack('<Q', 44)  # Size of zip64 end of central directory record
        record += struct.pack('<H', 45)  # Version made by
        record += struct.pack('<H', 45)  # Version needed to extract
        record += struct.pack('<I', 0)  # Number of this disk
        record += struct.pack('<I', 0)  # Disk where central directory starts
        record += struct.pack('<Q', entryCount)  # Number of entries on this disk
        record += struct.pack('<Q', entryCount)  # Total number of entries
        record += struct.pack('<Q', centralDirSize)  # Size of central directory
        record += struct.pack('<Q', centralDirStart)  # Offset of start of central directory

        return record

    @classmethod
    def _makeZip64Locator(cls, zip64EocdOffset: int):
        """Create Zip64 end of central directory locator"""
        locator = struct.pack('<I', cls.ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE)
        locator += struct.pack('<I', 0)  # Disk number with zip64 EOCD
        locator += struct.pack('<Q', zip64EocdOffset)  # Offset of zip64 EOCD
        locator += struct.pack('<I', 1)  # Total number of disks

        return locator

    @classmethod
    def _makeEndOfCentralDir(cls, entryCount: int, centralDirSize: int, centralDirStart: int):
        """Create end of central directory record"""
        # For Zip64, use 0xFFFF/0xFFFFFFFF as markers
        maxEntries = _clamp(entryCount, ZIP_FILECOUNT_LIMIT, 0xFFFF)
        maxSize = _clamp(centralDirSize, ZIP64_LIMIT, ZIP64_MARKER)
        maxOffset = _clamp(centralDirStart, ZIP64_LIMIT, ZIP64_MARKER)

        eocd = struct.pack('<I', cls.END_OF_CENTRAL_DIR_SIGNATURE)
        eocd += struct.pack('<H', 0)  # Number of this disk
        eocd += struct.pack('<H', 0)  # Disk where central directory starts
        eocd += struct.pack('<H', maxEntries)  # Number of entries on this disk
        eocd += struct.pack('<H', maxEntries)  # Total number of entries
        eocd += struct.pack('<I', maxSize)  # Size of central directory
        eocd += struct.pack('<I', maxOffset)  # Offset of start of central directory
        eocd += struct.pack('<H', 0)  # Comment length

        return eocd


def calculateArchiveSize(entries, compression=COMPRESSION_STORE, patchHeaders=False):
    """
    Exact size of the archive ArchiveWriter produces for the given (name, size) pairs.

    Only possible without compression, since deflate output size is unknown until written.

    Returns:
        int or None: Archive size in bytes, None for deflate
    """
    if compression != COMPRESSION_STORE:
        return None

    offset = 0
    closed = []

    for name, size in entries:
        entry = ArchiveEntry(
            name=name,
            nameBytes=name.encode('utf-8'),
            headerOffset=offset,
            compressionMethod=ArchiveWriter.STORE,
            declaredSize=size,
            zip64=ArchiveWriter.entryNeedsZip64(size, compression),
            compressedSize=size,
            uncompressedSize=size,
        )

        offset += len(ArchiveWriter._makeLocalFileHeader(entry, useDescriptor=not patchHeaders)) + size
        if not patchHeaders:
            offset += len(ArchiveWriter._makeDataDescriptor(entry))

        closed.append(entry)

    centralDirStart = offset
    for entry in closed:
        offset += len(ArchiveWriter._makeCentralDirHeader(entry, useDescriptor=not patchHeaders))
    centralDirSize = offset - centralDirStart

    offset += len(ArchiveWriter._makeEndRecords(len(closed), centralDirSize, centralDirStart, offset))
    return offset
