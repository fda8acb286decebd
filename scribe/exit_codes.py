"""Exit codes for the scribe CLI."""

from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR_GENERAL = 1
    ERROR_ARGS = 2
    ERROR_FILE = 3
    ERROR_CONVERSION = 4
    ERROR_BACKEND = 5
    PARTIAL_SUCCESS = 10
