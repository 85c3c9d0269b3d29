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

import logging
import os
import unittest
from unittest.mock import patch

from signalslot.exceptions import SlotMustAcceptKeywords

from mockexport.Kernel import (
    EventService, Event, ExportEvent, getLogger, configureGlobalLogLevel, LOG_LEVEL_MAPPING
)


class EventServiceTest(unittest.TestCase):
    """
    Test case for the singleton, signalslot-based EventService.
    """

    def setUp(self):
        self.e = EventService.getInstance()
        # Registrations live as long as the process; each test gets its own event
        self.key = f'/test/{self._testMethodName}'

    def testIsSingleton(self):
        self.assertIs(EventService.getInstance(), EventService())
        self.assertIs(self.e, EventService.getInstance())

    def testRegister(self):
        self.assertTrue(self.e.register(self.key))
        self.assertFalse(self.e.register(self.key))
        self.assertTrue(self.e.isRegistered(self.key))

    def testTriggerPassesKeywords(self):
        log = []

        def s1(**kwargs):
            log.append(('s1', kwargs))

        def s2(exportId, **kwargs):
            log.append(('s2', exportId))

        self.e.register(self.key)
        self.e.subscribe(self.key, s1)
        self.e.subscribe(self.key, s2)
        self.e.trigger(self.key, exportId='abc', bytesSent=10)

        self.assertEqual(log, [('s1', {'exportId': 'abc', 'bytesSent': 10}), ('s2', 'abc')])

    def testSubscribeTwiceCallsOnce(self):
        calls = []

        def observer(**kwargs):
            calls.append(kwargs)

        self.e.register(self.key)
        self.e.subscribe(self.key, observer)
        self.e.subscribe(self.key, observer)
        self.e.trigger(self.key)

        self.assertEqual(len(calls), 1)

    def testUnsubscribe(self):
        calls = []

        def observer(**kwargs):
            calls.append(kwargs)

        self.e.register(self.key)
        self.e.subscribe(self.key, observer)
        self.e.unsubscribe(self.key, observer)
        self.e.trigger(self.key)

        # Unknown events and observers are ignored
        self.e.unsubscribe(self.key, observer)
        self.e.unsubscribe('Unknown', observer)

        self.assertEqual(calls, [])

    def testSubscribeUnregistered(self):
        with self.assertRaises(KeyError):
            self.e.subscribe('Unknown', lambda **kwargs: None)

    def testTriggerUnregisteredIsNoop(self):
        self.e.trigger('Unknown', value=1)

    def testObserverMustAcceptKeywords(self):

        def observer(exportId):
            pass

        self.e.register(self.key)
        with self.assertRaises(SlotMustAcceptKeywords):
            self.e.subscribe(self.key, observer)

    def testBoundMethodObservers(self):

        class Counter:

            def __init__(self):
                self.count = 0

            def onEvent(self, **kwargs):
                self.count += 1

        counter = Counter()
        self.e.register(self.key)
        self.e.subscribe(self.key, counter.onEvent)
        self.e.trigger(self.key)
        self.e.unsubscribe(self.key, counter.onEvent)
        self.e.trigger(self.key)

        self.assertEqual(counter.count, 1)


class ExportEventTest(unittest.TestCase):

    def testAllRegistered(self):
        # Registering again is a no-op
        ExportEvent.registerAll()

        service = EventService.getInstance()
        for event in ExportEvent.all():
            self.assertTrue(service.isRegistered(event.key))

        self.assertEqual(len({event.key for event in ExportEvent.all()}), 3)

    def testEventWrapper(self):
        received = []

        def observer(**kwargs):
            received.append(kwargs)

        ExportEvent.downloadAbort.subscribe(observer)
        try:
            ExportEvent.downloadAbort.trigger(exportId='x', bytesSent=5, reason='reset')
        finally:
            ExportEvent.downloadAbort.unsubscribe(observer)

        ExportEvent.downloadAbort.trigger(exportId='y', bytesSent=0, reason='')
        self.assertEqual(received, [{'exportId': 'x', 'bytesSent': 5, 'reason': 'reset'}])

    def testCustomEvent(self):
        event = Event('/test/custom')
        self.assertTrue(event.register())
        self.assertFalse(event.register())
        self.assertTrue(EventService.getInstance().isRegistered('/test/custom'))


class LoggingTest(unittest.TestCase):

    def setUp(self):
        self.rootLogger = logging.getLogger()
        self.originalLevel = self.rootLogger.level
        self.originalHandlers = list(self.rootLogger.handlers)

    def tearDown(self):
        self.rootLogger.setLevel(self.originalLevel)
        self.rootLogger.handlers = self.originalHandlers

    def testGetLoggerWithoutSentry(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('SENTRY_DSN', None)
            logger = getLogger('mockexport.test')

        self.assertIsInstance(logger, logging.Logger)
        self.assertEqual(logger.name, 'mockexport.test')

    def testConfigureGlobalLogLevel(self):
        self.rootLogger.handlers = []

        configureGlobalLogLevel(logging.WARNING)

        self.assertEqual(self.rootLogger.level, logging.WARNING)
        self.assertEqual(len(self.rootLogger.handlers), 1)
        self.assertEqual(self.rootLogger.handlers[0].level, logging.WARNING)

        # Existing handlers are updated, not duplicated
        configureGlobalLogLevel(logging.DEBUG)
        self.assertEqual(len(self.rootLogger.handlers), 1)
        self.assertEqual(self.rootLogger.handlers[0].level, logging.DEBUG)

    def testLevelMapping(self):
        self.assertEqual(LOG_LEVEL_MAPPING['INFO'], logging.INFO)
        self.assertEqual(set(LOG_LEVEL_MAPPING), {'DEBUG', 'INFO', 'WARNING', 'ERROR'})


if __name__ == '__main__':
    unittest.main()
