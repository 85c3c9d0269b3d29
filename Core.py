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
import re
import signal
import sys
import zipfile

import requests

from mockexport.CLI import configureCLIParser, configureLogging, loadEnvFile, preprocessArguments, showVersion
from mockexport.Export import ExportPipeline, GenerationRequest, InvalidRequestError
from mockexport.Kernel import getLogger
from mockexport.Progress import Progress
from mockexport.Server import createServer
from mockexport.Settings import ServerSettings, TRANSFER_CHUNK_SIZE
from mockexport.Utils import flushPrint, formatSize, sendException

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(0)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def loadSettings(args, **overrides):
    """Environment defaults with any CLI flags given for this command on top."""
    for name in ('sizeMB', 'compression', 'filesPerGB'):
        overrides.setdefault(name, getattr(args, name, None))

    return ServerSettings.fromEnvironment(
        defaultSizeMB=overrides.pop('sizeMB'),
        compression=overrides.pop('compression'),
        filesPerGB=overrides.pop('filesPerGB'),
        **overrides,
    )


def processServe(args):
    settings = loadSettings(
        args,
        host=args.host,
        port=args.port,
        defaultDelayMs=args.delayMs,
        defaultThrottleKBps=args.throttleKBps,
    )

    server = createServer(settings)
    server.printBanner()

    try:
        server.start()
    finally:
        server.server_close()

    return 0


def processGenerate(args):
    settings = loadSettings(args)
    request = GenerationRequest.create(
        args.exportId, sizeMB=settings.defaultSizeMB, compression=settings.compression, settings=settings
    )
    pipeline = ExportPipeline(request, settings)

    output = args.output or pipeline.contentName

    if output == '-':
        # stdout is append-only: data descriptors instead of patched headers
        for data in pipeline.iterChunks():
            sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
        return 0

    progress = Progress(pipeline.size, description='Generating', useBar=args.showProgress)
    with open(output, 'wb') as f, progress:
        size = pipeline.writeTo(f, progress)

    logger.info(f'{output}: {len(pipeline.files)} files, {formatSize(size)}')
    flushPrint(f'Generated: {output}')
    return 0


def getFilenameFromResponse(response, default='export.zip'):
    disposition = response.headers.get('Content-Disposition', '')
    match = re.search(r'filename="?([^";]+)"?', disposition)
    return os.path.basename(match.group(1)) if match else default


def verifyArchive(path):
    """
    Read every entry back and check its CRC.

    Returns:
        int: Number of entries in the archive

    Raises:
        zipfile.BadZipFile: The archive is truncated, corrupt, or an entry fails its CRC
    """
    with zipfile.ZipFile(path) as archive:
        badEntry = archive.testzip()
        if badEntry is not None:
            raise zipfile.BadZipFile(f'CRC check failed for {badEntry}')
        return len(archive.infolist())


def processDownload(args):
    """
    Fetch an export from a running server, streaming it to disk.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    try:
        with requests.get(args.url, stream=True, timeout=(10, args.timeout)) as response:
            response.raise_for_status()

            outputPath = args.output or getFilenameFromResponse(response)
            totalSize = int(response.headers.get('Content-Length', 0)) or None

            with open(outputPath, 'wb') as f, Progress(
                totalSize, description='Downloading', useBar=args.showProgress
            ) as progress:
                for data in response.iter_content(chunk_size=TRANSFER_CHUNK_SIZE):
                    f.write(data)
                    progress.advance(len(data))

                if totalSize and progress.transferred != totalSize:
                    raise requests.exceptions.ChunkedEncodingError(
                        f'Connection closed after {progress.transferred} of {totalSize} bytes'
                    )

        flushPrint(f"Downloaded: {outputPath} ({progress.summary()})")

        if args.verify:
            entryCount = verifyArchive(outputPath)
            flushPrint(f"Verified: {entryCount} entries OK")

        return 0

    except (requests.exceptions.RequestException, zipfile.BadZipFile, OSError) as e:
        sendException(logger, e, errorPrefix="Download failed")
        return 1


def runCLIMain(argv=None):
    parser, globalsParent, commandNames = configureCLIParser()

    argv = sys.argv[1:] if argv is None else list(argv)

    # Global options are read on their own so they work before or after the command
    globalArgs, _ = globalsParent.parse_known_args(argv)

    loadEnvFile(globalArgs.envFile)
    configureLogging(globalArgs.logLevel)

    if globalArgs.version:
        showVersion()
        return 0

    args = parser.parse_args(preprocessArguments(argv, commandNames, globalsParent))

    try:
        if args.command == 'generate':
            return processGenerate(args)

        if args.command == 'download':
            return processDownload(args)

        return processServe(args)

    except (InvalidRequestError, ValueError) as e:
        # Invalid settings from the environment or the command line
        flushPrint(f'Error: {e}')
        return 2


def main():
    setupGracefulShutdown()

    try:
        return runCLIMain()
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return 0


if __name__ == '__main__':
    try:
        exitCode = main()
        sys.exit(exitCode or 0)
    except Exception as e:
        sendException(logger, e)
        sys.exit(1)
