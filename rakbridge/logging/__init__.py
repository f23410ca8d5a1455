"""
rakbridge.logging - Hierarchical logger with structured fields.

API:
    from rakbridge.logging import getLogger

    class MyAdapter:
        def __init__(self):
            self.log = getLogger()  # Auto: 'transport.myModule.MyAdapter'

        def listen(self):
            self.log.info("Listening", port=self.port)

    # Global configuration (optional, once at app startup)
    from rakbridge.logging import configureLogging
    configureLogging(logDir='logs', level='DEBUG')
"""

from .logger import getLogger, configureLogging, StructuredFormatter

__all__ = [
    'getLogger',
    'configureLogging',
    'StructuredFormatter'
]
