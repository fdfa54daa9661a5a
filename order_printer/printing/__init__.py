"""
Printing subsystem for Order Printer.

This package groups printing-related functionality:

- encoder: Order payloads to ESC/POS ticket bytes
- transport: Raw TCP delivery to the network printer
- worker: Background intake, single-consumer queue and job status transitions

For convenience, common names are re-exported for easy import.
"""

from .encoder import *
from .transport import *
from .worker import *
