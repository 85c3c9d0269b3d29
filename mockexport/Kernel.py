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
import logging
import threading

# Error reporting is disabled unless SENTRY_DSN is configured.
import sentry_sdk

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        # Update existing handlers
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('MOCKEXPORT_LOGGING_LEVEL'):
    envLogLevel = LOG_LEVEL_MAPPING.get(os.getenv('MOCKEXPORT_LOGGING_LEVEL').upper())
    if envLogLevel is not None:
        configureGlobalLogLevel(envLogLevel)


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Sentry is initialized once, and only when SENTRY_DSN
    is present in the environment; otherwise a plain logger is returned.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryDsn = os.getenv('SENTRY_DSN')
        if not sentryDsn:
            return logging.getLogger(name)

        if not sentry_sdk.get_client().is_active():
            # Suppress "sentry is attempting to send pending events..." message
            sentryAtexit.default_callback = lambda pending, timeout: None

            sentry_sdk.init(
                dsn=sentryDsn,
                release=version,
                default_integrations=False,
                integrations=[
                    LoggingIntegration(),
                    sentryAtexit.AtexitIntegration(),
                ],
            )

        logger = logging.getLogger(name)

        # Add Sentry handler if not already present
        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')

            syslog = SentryHandler()
            syslog.setFormatter(formatter)
            logger.addHandler(syslog)

        return logging.LoggerAdapter(logger, {'version': version or 'unknown'})

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, log the error and continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class.
    Subclasses override initialize() instead of __init__.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class EventService(Singleton):
    """
    Dispatches lifecycle events to observers through 'signalslot' signals.

    Observers are plain callables that must accept **kwargs; each trigger passes the
    keyword arguments given to trigger() through unchanged.
    """

    def initialize(self):
        self.signals = {}
        self._lock = threading.RLock()

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        with self._lock:
            if self.isRegistered(event):
                return False
            self.signals[event] = Signal(name=event, threadsafe=True)
            return True

    def trigger(self, event, **kwargs):
        """
        Trigger an event, calling all connected observers.
        """
        signal = self.signals.get(event)
        if signal is None:
            return

        signal.emit(**kwargs)

    def subscribe(self, event, observer):
        with self._lock:
            if not self.isRegistered(event):
                raise KeyError(f"You must register event '{event}' first.")

            signal = self.signals[event]
            if observer not in signal._slots:
                signal.connect(observer)

    def unsubscribe(self, event, observer):
        with self._lock:
            signal = self.signals.get(event)
            if signal is not None and observer in signal._slots:
                signal.disconnect(observer)


class Event:
    """ Simple Event wrapper"""

    def __init__(self, key):
        self.key = key

    @property
    def eventService(self):
        return EventService.getInstance()

    def subscribe(self, observer):
        return self.eventService.subscribe(self.key, observer)

    def unsubscribe(self, observer):
        return self.eventService.unsubscribe(self.key, observer)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)

    def register(self):
        return self.eventService.register(self.key)


# Event pattern: RESTful + /[action]
class ExportEvent:
    downloadStart = Event('/export/download/create')
    downloadComplete = Event('/export/download/update')
    downloadAbort = Event('/export/download/delete')

    @classmethod
    def all(cls):
        return (cls.downloadStart, cls.downloadComplete, cls.downloadAbort)

    @classmethod
    def registerAll(cls):
        for event in cls.all():
            event.register()


ExportEvent.registerAll()
