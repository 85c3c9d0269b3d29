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

import os
import sys

import bitmath

from mockexport.Kernel import getLogger

ONE_KB = int(bitmath.KiB(1).bytes)
ONE_MB = int(bitmath.MiB(1).bytes)
ONE_GB = int(bitmath.GiB(1).bytes)
ONE_TB = int(bitmath.TiB(1).bytes)

logger = getLogger(__name__)


# Server output usually goes to a pipe (docker logs, CI), so every line is flushed
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError:
        encoding = sys.stdout.encoding or 'ascii'
        print(text.encode(encoding, errors='replace').decode(encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    """Human readable size in SI units: '512 Bytes', '105M', '1.1G', '2.20T'."""
    if decimal is None:
        decimal = 0 if size < ONE_GB else (1 if size < ONE_TB else 2)

    if plural is None:
        plural = size <= ONE_KB

    unitField = 'unit_plural' if plural else 'unit'
    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format(f'{{value:.{decimal}f}}{{{unitField}}}')

    if sizeStr.endswith(('Byte', 'Bytes')):
        return sizeStr.replace('Byte', ' Byte')
    return sizeStr.replace('B', '').upper()


def formatDuration(seconds):
    """Format seconds as a short human readable duration, e.g. '3m 20s'."""
    seconds = int(round(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    if hours:
        return f'{hours}h {minutes}m {seconds}s'
    if minutes:
        return f'{minutes}m {seconds}s'
    return f'{seconds}s'


def getEnv(envVar, default):
    """
    Read an environment variable, converted to the type of default.
    Unparsable values are logged and the default is returned.
    """
    value = os.getenv(envVar)
    if value is None or default is None:
        return default if value is None else value

    try:
        if isinstance(default, bool):
            return value == 'True'
        return type(default)(value)
    except (ValueError, TypeError):
        logger.warning(f'Invalid value {value!r} for {envVar}, using default {default!r}')
        return default


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    """Tell the user a command failed, then log the traceback (reported to Sentry when enabled)."""
    flushPrint(f'{errorPrefix}: {e}' if errorPrefix else f'{e}')
    flushPrint(action or 'Please check the arguments and try again.')

    logger.exception(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e
