#
# Vector Network Analyzer Library
# Copyright © 2020-2023 D Scott Guthridge <scott_guthridge@rompromity.net>
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
#
"""
Error categories, exceptions and the error callback channel.

Every fallible operation in the library raises one of the exceptions
below.  Before raising, the message is logged and passed to the
optional error callback of the object that failed, given as
``error_fn(message, category)``.
"""

from enum import IntEnum
import logging

logger = logging.getLogger(__name__)


class ErrorCategory(IntEnum):
    """
    Category of error passed to the error callback.
    """
    SYSTEM = 0          # system error, e.g. out of memory or I/O error
    USAGE = 1           # invalid argument or call sequence
    VERSION = 2         # unsupported file version
    SYNTAX = 3          # malformed input file
    MATH = 4            # singular system, failure to converge, etc.


class VNAError(Exception):
    """
    Base class for all errors raised by the library.

    Args:
        message (str): description of the error
        category (ErrorCategory): kind of error
    """
    category = None

    def __init__(self, message, category=None):
        super().__init__(message)
        if category is not None:
            self.category = category

    @property
    def message(self):
        return self.args[0]


class UsageError(VNAError, ValueError):
    """
    Invalid argument, dimension mismatch or call out of sequence.
    """
    category = ErrorCategory.USAGE


class VNASystemError(VNAError, OSError):
    """
    Operating system failure such as an unreadable file.
    """
    category = ErrorCategory.SYSTEM


class VersionError(VNAError, ValueError):
    """
    A file has an unsupported version.
    """
    category = ErrorCategory.VERSION


class VNASyntaxError(VNAError, ValueError):
    """
    Malformed input in a loaded file.

    Args:
        message (str): description of the error
        filename (str, optional): file being parsed
        line (int, optional): line number of the error
    """
    category = ErrorCategory.SYNTAX

    def __init__(self, message, filename=None, line=None):
        if filename is not None and line is not None:
            message = f"{filename} (line {line}) {message}"
        elif filename is not None:
            message = f"{filename}: {message}"
        super().__init__(message)
        self.filename = filename
        self.line = line


class MathError(VNAError, ArithmeticError):
    """
    Domain error: singular system, insufficient standards, failure
    to converge or failed p-value test.  The object that raised it
    remains valid and the operation may be retried with more data.
    """
    category = ErrorCategory.MATH


def report(error_fn, exception):
    """
    Log an exception and pass it to the error callback.

    Args:
        error_fn (callable or None): user callback taking
            (message, category)
        exception (VNAError): the exception about to be raised

    Returns:
        the exception, so the caller can write
        ``raise report(self._error_fn, UsageError(...))``
    """
    logger.debug("%s: %s", exception.category.name, exception.message)
    if error_fn is not None:
        error_fn(exception.message, exception.category)
    return exception
