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

import argparse
import json
import os
import logging
import logging.config
import platform

from mockexport.Kernel import PUBLIC_VERSION, getLogger, configureGlobalLogLevel, LOG_LEVEL_MAPPING
from mockexport.Settings import COMPRESSIONS, SERVICE_NAME
from mockexport.Utils import flushPrint, getEnv

DEFAULT_ENV_FILE = '.env'

logger = getLogger(__name__)


def loadEnvFile(envFilePath=None):
    """
    Load KEY=VALUE lines from a .env file into os.environ.
    Variables already present in the environment are left untouched.

    Returns:
        int: Number of variables loaded
    """
    envFilePath = envFilePath or DEFAULT_ENV_FILE
    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                # Skip empty lines and comments
                if not line or line.startswith('#'):
                    continue

                if line.startswith('export '):
                    line = line[len('export '):]

                if '=' not in line:
                    logger.warning(f'.env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    logger.warning(f'.env line {lineNum}: Empty key')
                    continue

                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

    except OSError as e:
        logger.error(f'Unable to read {envFilePath}: {e}')
        return loadedCount

    logger.info(f'Loaded {loadedCount} environment variables from {envFilePath}')
    return loadedCount


def configureLogging(logLevel):
    """
    Configure logging from --log-level, falling back to MOCKEXPORT_LOGGING_LEVEL.

    Either value can be a level name (DEBUG, INFO, WARNING, ERROR) or the path of a JSON
    file holding a logging.config.dictConfig dictionary.

    Returns:
        The applied level name or config path, None when nothing was configured
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('MOCKEXPORT_LOGGING_LEVEL', None)

    if logLevel is None:
        # Server logs are the product here; default to INFO
        configureGlobalLogLevel(logging.INFO)
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    level = LOG_LEVEL_MAPPING.get(logLevel.upper())
    if level is not None:
        configureGlobalLogLevel(level)
        logger.debug(f"Logging level set to {logLevel}")
    else:
        configureGlobalLogLevel(logging.WARNING)
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f"{SERVICE_NAME} v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Python {platform.python_version()} on {uname.system} {uname.release} {uname.machine}")


# Argument validators
def validateNonNegative(valueStr, fieldName='Value'):
    try:
        value = int(valueStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid {fieldName.lower()} value: {valueStr}")

    if value < 0:
        raise argparse.ArgumentTypeError(f"{fieldName} {value} cannot be negative")
    return value


def validatePositive(valueStr, fieldName='Value'):
    value = validateNonNegative(valueStr, fieldName)
    if value == 0:
        raise argparse.ArgumentTypeError(f"{fieldName} must be greater than 0")
    return value


def validatePort(portStr):
    try:
        port = int(portStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")

    # 0 asks the OS for a free port
    if not (0 <= port <= 65535):
        raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (0-65535)")
    return port


def validateLogLevel(logLevel):
    if os.path.isfile(logLevel):
        return logLevel

    if logLevel.upper() not in LOG_LEVEL_MAPPING:
        raise argparse.ArgumentTypeError(
            f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(LOG_LEVEL_MAPPING)}"
        )
    return logLevel.upper()


def _addExportOptions(parser):
    """Options shared by commands that produce an archive; None means 'use the configured default'."""
    parser.add_argument(
        "--size",
        type=lambda value: validatePositive(value, "Size"),
        metavar="MB",
        dest="sizeMB",
        help="Archive content size in MB (default: FILE_SIZE_MB or 100)"
    )
    parser.add_argument(
        "--compression",
        choices=COMPRESSIONS,
        help="Archive compression (default: ARCHIVE_COMPRESSION or store)"
    )
    parser.add_argument(
        "--files-per-gb",
        type=lambda value: validatePositive(value, "Files per GB"),
        metavar="COUNT",
        dest="filesPerGB",
        help="How many files each GB of content is split into (default: 100)"
    )


def configureCLIParser():
    """
    Build the command line parser.

    Returns:
        tuple: (parser, globalsParent, commandNames)
    """
    globalsParent = argparse.ArgumentParser(add_help=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: INFO)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )
    globalsParent.add_argument(
        "--env-file",
        metavar="PATH",
        dest="envFile",
        help=f"Load environment variables from this file (default: {DEFAULT_ENV_FILE} if present)"
    )

    parser = argparse.ArgumentParser(
        prog="mockexport",
        description=f"{SERVICE_NAME}: serves slow, large, synthetic ZIP exports for download testing.",
        parents=[globalsParent],
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    serveSubparser = subparsers.add_parser(
        'serve', help='Run the mock export HTTP server (default command)', parents=[globalsParent]
    )
    serveSubparser.add_argument("--host", help="Interface to bind (default: HOST or 0.0.0.0)")
    serveSubparser.add_argument("--port", type=validatePort, help="Port to listen on (default: PORT or 8081)")
    serveSubparser.add_argument(
        "--delay",
        type=lambda value: validateNonNegative(value, "Delay"),
        metavar="MS",
        dest="delayMs",
        help="Default initial delay in milliseconds (default: INITIAL_DELAY_MS or 0)"
    )
    serveSubparser.add_argument(
        "--throttle",
        type=lambda value: validateNonNegative(value, "Throttle"),
        metavar="KBPS",
        dest="throttleKBps",
        help="Default download speed limit in KB/s, 0 = unlimited (default: THROTTLE_KBPS or 0)"
    )
    _addExportOptions(serveSubparser)

    generateSubparser = subparsers.add_parser(
        'generate', help='Write an export archive to a local file or stdout', parents=[globalsParent]
    )
    generateSubparser.add_argument(
        "exportId", nargs="?", default="local", metavar="EXPORT_ID", help="Export identifier (default: local)"
    )
    generateSubparser.add_argument(
        "--output",
        "-o",
        metavar="PATH",
        help="Output file, '-' for stdout (default: export-EXPORT_ID.zip)"
    )
    generateSubparser.add_argument(
        "--no-progress", action="store_false", dest="showProgress", help="Do not show a progress bar"
    )
    _addExportOptions(generateSubparser)

    downloadSubparser = subparsers.add_parser(
        'download', help='Download an export from a running server', parents=[globalsParent]
    )
    downloadSubparser.add_argument(
        "url", metavar="URL", help="Export URL, e.g. http://localhost:8081/exports/test/download?sizeMB=10"
    )
    downloadSubparser.add_argument(
        "--output", "-o", metavar="PATH", help="Output file path (default: use filename from server)"
    )
    downloadSubparser.add_argument(
        "--verify", action="store_true", help="Check the downloaded archive's CRCs with zipfile"
    )
    downloadSubparser.add_argument(
        "--timeout",
        type=lambda value: validatePositive(value, "Timeout"),
        default=600,
        metavar="SECONDS",
        help="Read timeout; must exceed the server's startup delay (default: 600)"
    )
    downloadSubparser.add_argument(
        "--no-progress", action="store_false", dest="showProgress", help="Do not show a progress bar"
    )

    commandNames = {'serve', 'generate', 'download'}
    return parser, globalsParent, commandNames


def preprocessArguments(argv, commandNames, globalsParent):
    """Insert the default 'serve' command when no command is given."""
    try:
        _, rest = globalsParent.parse_known_args(argv)
    except SystemExit:
        return argv

    if rest and rest[0] in commandNames:
        return argv

    if argv and argv[0] in ('-h', '--help'):
        return argv

    # 'serve' inherits the global options, so they can follow it
    return ['serve'] + argv
