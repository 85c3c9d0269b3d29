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
import json
import os
import re
import select
import socket
import threading
import time

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, unquote, urlparse

from mockexport.Export import ExportPipeline, GenerationAbort, GenerationRequest, InvalidRequestError
from mockexport.Kernel import getLogger, ExportEvent, PUBLIC_VERSION
from mockexport.Progress import Progress
from mockexport.Settings import ServerSettings, SERVICE_NAME, ENVIRONMENT_VARIABLES
from mockexport.Utils import flushPrint, formatSize

DOWNLOAD_PATTERN = re.compile(r'^/exports/([^/]+)/download/?$')
LOG_OUTPUT_DURATION = 5  # Seconds
DISCONNECT_POLL_INTERVAL = 0.25  # Seconds

logger = getLogger(__name__)


class ChunkedTransferWriter:
    """HTTP/1.1 chunked transfer encoding over a raw response stream."""

    def __init__(self, wfile):
        self.wfile = wfile
        self.closed = False

    def write(self, data):
        if not data:
            return 0

        self.wfile.write(f'{len(data):X}\r\n'.encode('ascii'))
        self.wfile.write(data)
        self.wfile.write(b'\r\n')
        return len(data)

    def flush(self):
        self.wfile.flush()

    def close(self):
        """Send the terminating zero-length chunk."""
        if self.closed:
            return

        self.wfile.write(b'0\r\n\r\n')
        self.wfile.flush()
        self.closed = True


class ExportHandler(BaseHTTPRequestHandler):

    protocol_version = 'HTTP/1.1'
    server_version = f'MockExport/{PUBLIC_VERSION}'

    headersCommitted = False

    def log_message(self, format, *args):
        logger.debug(f'{self.address_string()} - {format % args}')

    def end_headers(self):
        super().end_headers()
        self.headersCommitted = True

    def handle_one_request(self):
        try:
            super().handle_one_request()
        except ConnectionError as e:
            # Client vanished between requests or while the response was being flushed
            logger.debug(f'Connection closed by {self.address_string()}: {e!r}')
            self.close_connection = True

    def _sendJson(self, status, payload):
        body = json.dumps(payload, indent=2).encode('utf-8')

        self.send_response(status)
        self.send_header('Content-Type', 'application/json; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()

        if self.command != 'HEAD':
            self.wfile.write(body)

    def do_GET(self):
        self._dispatch()

    def do_HEAD(self):
        self._dispatch()

    def _dispatch(self):
        # Handlers serve several requests on a keep-alive connection
        self.headersCommitted = False

        parsedURL = urlparse(self.path)
        path = parsedURL.path
        query = parse_qs(parsedURL.query)

        try:
            match = DOWNLOAD_PATTERN.match(path)
            if match:
                self._handleDownload(unquote(match.group(1)), query)
            elif path == '/health':
                self._sendJson(HTTPStatus.OK, self.server.health())
            elif path == '/':
                self._sendJson(HTTPStatus.OK, self.server.describe())
            else:
                self._sendJson(HTTPStatus.NOT_FOUND, {'error': f'Not found: {path}'})

        except InvalidRequestError as e:
            logger.info(f'Rejected {self.command} {self.path}: {e}')
            self._sendJson(HTTPStatus.BAD_REQUEST, {'error': str(e)})

        except Exception as e:
            logger.exception(e)
            if not self.headersCommitted:
                self._sendJson(HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'Error creating archive'})
            self.close_connection = True

    # Download
    def _sendDownloadHeaders(self, pipeline):
        self.send_response(HTTPStatus.OK)
        self.send_header('Content-Type', pipeline.contentType)
        self.send_header('Content-Disposition', f'attachment; filename="{pipeline.contentName}"')
        self.send_header('Cache-Control', 'no-store')

        if pipeline.size is not None:
            self.send_header('Content-Length', str(pipeline.size))
        else:
            self.send_header('Transfer-Encoding', 'chunked')

        self.end_headers()

    def _clientDisconnected(self):
        """A readable socket with nothing to read means the peer closed it."""
        try:
            readable, _, _ = select.select([self.connection], [], [], 0)
            if not readable:
                return False
            return self.connection.recv(1, socket.MSG_PEEK) == b''
        except (OSError, ValueError):
            return True

    def _waitInterruptible(self, timeout):
        """Wait up to timeout seconds; True if the server stops or the client leaves first."""
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False

            if self.server.stopEvent.wait(min(remaining, DISCONNECT_POLL_INTERVAL)):
                return True

            if self._clientDisconnected():
                return True

    def _handleDownload(self, exportId, query):
        request = GenerationRequest.fromQuery(exportId, query, self.server.settings)
        pipeline = ExportPipeline(request, self.server.settings)

        if self.command == 'HEAD':
            self._sendDownloadHeaders(pipeline)
            return

        pipeline.describe()

        progress = None
        try:
            if not pipeline.waitStartupDelay(self._waitInterruptible):
                raise GenerationAbort(f'Export {exportId} cancelled during startup delay')

            self._sendDownloadHeaders(pipeline)

            if pipeline.size is not None:
                sink = self.wfile
            else:
                sink = ChunkedTransferWriter(self.wfile)

            progress = Progress(
                pipeline.size,
                description=f'[{exportId}] Transfer',
                logInterval=LOG_OUTPUT_DURATION,
            )
            pipeline.streamTo(sink, progress, origin=self.server)

            if isinstance(sink, ChunkedTransferWriter):
                sink.close()

            progress.finish()
            logger.info(f'[{exportId}] Download complete: {progress.summary()}')

        except GenerationAbort as e:
            if progress:
                progress.finish(complete=False)
            logger.warning(f'[{exportId}] {e}')

            # No terminating chunk: the client must see a truncated body
            self.close_connection = True


class Server(ThreadingHTTPServer):

    request_queue_size = 32
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, settings=None, serverAddress=None, requestHandlerClass=None):
        self.settings = settings or ServerSettings()
        self.stopEvent = threading.Event()
        self.startTime = time.time()

        self._statsLock = threading.Lock()
        self.activeDownloads = 0
        self.completedDownloads = 0
        self.abortedDownloads = 0
        self.bytesServed = 0

        if serverAddress is None:
            serverAddress = (self.settings.host, self.settings.port)

        if requestHandlerClass is None:
            requestHandlerClass = ExportHandler

        super().__init__(serverAddress, requestHandlerClass)

        ExportEvent.downloadStart.subscribe(self.onDownloadStart)
        ExportEvent.downloadComplete.subscribe(self.onDownloadComplete)
        ExportEvent.downloadAbort.subscribe(self.onDownloadAbort)

    @property
    def port(self):
        return self.server_address[1]

    # Event observers; only downloads served by this server are counted
    def onDownloadStart(self, origin=None, **kwargs):
        if origin is not self:
            return

        with self._statsLock:
            self.activeDownloads += 1

    def onDownloadComplete(self, origin=None, bytesSent=0, **kwargs):
        if origin is not self:
            return

        with self._statsLock:
            self.activeDownloads -= 1
            self.completedDownloads += 1
            self.bytesServed += bytesSent

    def onDownloadAbort(self, origin=None, bytesSent=0, **kwargs):
        if origin is not self:
            return

        with self._statsLock:
            self.activeDownloads -= 1
            self.abortedDownloads += 1
            self.bytesServed += bytesSent

    def getStats(self):
        with self._statsLock:
            return {
                'active': self.activeDownloads,
                'completed': self.completedDownloads,
                'aborted': self.abortedDownloads,
                'bytesServed': self.bytesServed,
            }

    def health(self):
        settings = self.settings
        return {
            'status': 'UP',
            'timestamp': datetime.datetime.now(datetime.timezone.utc).isoformat(),
            'version': PUBLIC_VERSION,
            'uptimeSeconds': int(time.time() - self.startTime),
            'config': {
                'defaultDelayMs': settings.defaultDelayMs,
                'defaultSizeMB': settings.defaultSizeMB,
                'defaultThrottleKBps': settings.defaultThrottleKBps,
                'compression': settings.compression,
                'filesPerGB': settings.filesPerGB,
            },
            'downloads': self.getStats(),
        }

    def describe(self):
        return {
            'service': SERVICE_NAME,
            'version': PUBLIC_VERSION,
            'endpoints': {
                'download': 'GET /exports/:exportId/download',
                'health': 'GET /health',
            },
            'queryParameters': {
                'delay': 'Initial delay in milliseconds (e.g., 120000 for 2 minutes)',
                'sizeMB': 'File size in MB (e.g., 1024 for 1GB, 5120 for 5GB)',
                'throttleKBps': 'Download speed limit in KB/s (e.g., 512)',
                'compression': 'Archive compression: store (default) or deflate',
            },
            'examples': {
                'small': '/exports/test/download?delay=0&sizeMB=10',
                'medium': '/exports/test/download?delay=60000&sizeMB=100',
                'large': '/exports/test/download?delay=120000&sizeMB=1024',
                'huge': '/exports/test/download?delay=300000&sizeMB=5120&throttleKBps=512',
            },
        }

    def printBanner(self):
        settings = self.settings
        throttle = (
            formatSize(settings.defaultThrottleKBps * 1024) + '/sec' if settings.defaultThrottleKBps else 'disabled'
        )

        lines = [
            '=' * 60,
            f'{SERVICE_NAME} Server {PUBLIC_VERSION}',
            '=' * 60,
            f'Listening on {self.server_address[0]}:{self.port}',
            '',
            'Default Configuration:',
            f'  Initial Delay: {settings.defaultDelayMs}ms ({settings.defaultDelayMs / 1000 / 60:.2f} minutes)',
            f'  File Size: {settings.defaultSizeMB}MB ({settings.defaultSizeMB / 1024:.2f}GB)',
            f'  Throttle: {throttle}',
            f'  Compression: {settings.compression}',
            '',
            'Environment Variables:',
        ]
        lines += [f'  {name}: {os.getenv(name) or "not set"}' for name in ENVIRONMENT_VARIABLES]
        lines += [
            '',
            'Endpoints:',
            f'  GET http://localhost:{self.port}/exports/:exportId/download',
            f'  GET http://localhost:{self.port}/health',
            '=' * 60,
        ]

        for line in lines:
            flushPrint(line)

    def handle_error(self, request, client_address):
        logger.exception(f'Error while handling request from {client_address}')

    def start(self):
        self.serve_forever()

    def startInBackground(self):
        thread = threading.Thread(target=self.serve_forever, name=f'MockExportServer-{self.port}', daemon=True)
        thread.start()
        return thread

    def shutdown(self):
        # Releases handlers still sleeping through a startup delay
        self.stopEvent.set()
        super().shutdown()

    def server_close(self):
        ExportEvent.downloadStart.unsubscribe(self.onDownloadStart)
        ExportEvent.downloadComplete.unsubscribe(self.onDownloadComplete)
        ExportEvent.downloadAbort.unsubscribe(self.onDownloadAbort)
        super().server_close()


def createServer(settings=None, host=None, port=None, handlerClass=None):
    settings = settings or ServerSettings.fromEnvironment()

    serverAddress = (
        host if host is not None else settings.host,
        port if port is not None else settings.port,
    )
    return Server(settings, serverAddress, handlerClass)
