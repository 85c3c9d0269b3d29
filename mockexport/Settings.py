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

from dataclasses import dataclass

from mockexport.Kernel import getLogger
from mockexport.Utils import getEnv, ONE_MB

SERVICE_NAME = 'Mock Export API'

# Unit of lazy generation; never buffered more than one per pipeline.
CHUNK_SIZE = ONE_MB

# Size of the slices handed to the network socket.
TRANSFER_CHUNK_SIZE = getEnv('TRANSFER_CHUNK_SIZE', 256 * 1024)

COMPRESSION_STORE = 'store'
COMPRESSION_DEFLATE = 'deflate'
COMPRESSIONS = (COMPRESSION_STORE, COMPRESSION_DEFLATE)

ENVIRONMENT_VARIABLES = (
    'HOST', 'PORT', 'INITIAL_DELAY_MS', 'FILE_SIZE_MB', 'THROTTLE_KBPS', 'ARCHIVE_COMPRESSION',
    'ARCHIVE_COMPRESSION_LEVEL', 'FILES_PER_GB', 'MAX_SIZE_MB', 'MAX_DELAY_MS', 'MAX_THROTTLE_KBPS'
)

logger = getLogger(__name__)


@dataclass(frozen=True)
class ServerSettings:
    """
    Immutable server configuration. One instance is built at start-up and handed to the
    server, which passes it into every request pipeline.
    """
    host: str = '0.0.0.0'
    port: int = 8081

    # Request defaults, overridable per request
    defaultDelayMs: int = 0
    defaultSizeMB: int = 100
    defaultThrottleKBps: int = 0
    compression: str = COMPRESSION_STORE

    compressionLevel: int = 1  # Speed over ratio
    filesPerGB: int = 100  # Realism knob for the archive layout

    # Upper bounds for request validation
    maxSizeMB: int = 1024 * 1024  # 1 TiB
    maxDelayMs: int = 60 * 60 * 1000  # 1 hour
    maxThrottleKBps: int = 10 * 1024 * 1024  # 10 GiB/s

    def __post_init__(self):
        if self.compression not in COMPRESSIONS:
            raise ValueError(f"Invalid compression '{self.compression}', expected one of {COMPRESSIONS}")

        if not 0 <= self.compressionLevel <= 9:
            raise ValueError(f"Invalid compression level {self.compressionLevel}")

        if self.filesPerGB <= 0:
            raise ValueError(f"filesPerGB must be positive, got {self.filesPerGB}")

        if not 0 <= self.port <= 65535:
            raise ValueError(f"Port {self.port} is out of valid range (0-65535)")

        for name in (
            'defaultDelayMs', 'defaultSizeMB', 'defaultThrottleKBps', 'maxSizeMB', 'maxDelayMs', 'maxThrottleKBps'
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @classmethod
    def fromEnvironment(cls, **overrides):
        """
        Build settings from environment variables; keyword overrides that are not None win
        (used for CLI flags).
        """
        defaults = cls()
        values = {
            'host': getEnv('HOST', defaults.host),
            'port': getEnv('PORT', defaults.port),
            'defaultDelayMs': getEnv('INITIAL_DELAY_MS', defaults.defaultDelayMs),
            'defaultSizeMB': getEnv('FILE_SIZE_MB', defaults.defaultSizeMB),
            'defaultThrottleKBps': getEnv('THROTTLE_KBPS', defaults.defaultThrottleKBps),
            'compression': getEnv('ARCHIVE_COMPRESSION', defaults.compression).lower(),
            'compressionLevel': getEnv('ARCHIVE_COMPRESSION_LEVEL', defaults.compressionLevel),
            'filesPerGB': getEnv('FILES_PER_GB', defaults.filesPerGB),
            'maxSizeMB': getEnv('MAX_SIZE_MB', defaults.maxSizeMB),
            'maxDelayMs': getEnv('MAX_DELAY_MS', defaults.maxDelayMs),
            'maxThrottleKBps': getEnv('MAX_THROTTLE_KBPS', defaults.maxThrottleKBps),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})

        settings = cls(**values)
        logger.debug(f'Loaded settings: {settings}')
        return settings
