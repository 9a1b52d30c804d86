"""
Copy-tool exit code classification.

The exit code is a bitmask:
    1  files copied
    2  extra destination files cleaned
    4  mismatched files detected
    8  copy errors occurred
    16 fatal error
"""
from dataclasses import dataclass
from enum import Enum
from typing import Union


FILES_COPIED = 1
EXTRAS_CLEANED = 2
MISMATCHES = 4
COPY_ERRORS = 8
FATAL_ERROR = 16


class Severity(Enum):
    """How a finished job is treated."""
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"


@dataclass(frozen=True)
class ExitCodeResult:
    """Classification of one exit code."""
    exit_code: int
    severity: Severity
    message: str

    @property
    def files_copied(self) -> bool:
        return bool(self.exit_code & FILES_COPIED)

    @property
    def extras_cleaned(self) -> bool:
        return bool(self.exit_code & EXTRAS_CLEANED)

    @property
    def mismatches(self) -> bool:
        return bool(self.exit_code & MISMATCHES)

    @property
    def copy_errors(self) -> bool:
        return bool(self.exit_code & COPY_ERRORS)

    @property
    def fatal_error(self) -> bool:
        return bool(self.exit_code & FATAL_ERROR)

    @property
    def should_retry(self) -> bool:
        return self.severity in (Severity.ERROR, Severity.FATAL)

    @property
    def is_failure(self) -> bool:
        return self.should_retry


def parse_severity(value: Union[str, Severity]) -> Severity:
    """Accept a Severity or its name for the mismatch policy."""
    if isinstance(value, Severity):
        return value
    try:
        return Severity(value.lower())
    except ValueError:
        raise ValueError(f"Unknown severity: {value}") from None


def _message_for(exit_code: int) -> str:
    if exit_code & FATAL_ERROR:
        return "fatal error"
    if exit_code & COPY_ERRORS:
        return "some files could not be copied"
    if exit_code & EXTRAS_CLEANED:
        return "extra files cleaned"
    if exit_code & MISMATCHES:
        return "mismatched files detected"
    if exit_code & FILES_COPIED:
        return "files copied successfully"
    return "no changes needed"


def classify_exit_code(
    exit_code: int,
    mismatch_severity: Union[str, Severity] = Severity.WARNING,
) -> ExitCodeResult:
    """
    Classify a copy-tool exit code.

    Args:
        exit_code: Process exit code
        mismatch_severity: Severity used when only the mismatch bit is
            significant (SUCCESS, WARNING or ERROR)

    Returns:
        ExitCodeResult with severity and message
    """
    mismatch_severity = parse_severity(mismatch_severity)
    if mismatch_severity == Severity.FATAL:
        raise ValueError("Mismatch severity cannot be fatal")

    if exit_code < 0:
        # Killed or crashed process; no bitmask to read
        return ExitCodeResult(exit_code, Severity.FATAL, f"process terminated abnormally ({exit_code})")

    if exit_code & FATAL_ERROR:
        severity = Severity.FATAL
    elif exit_code & COPY_ERRORS:
        severity = Severity.ERROR
    elif exit_code & MISMATCHES:
        severity = mismatch_severity
    else:
        severity = Severity.SUCCESS

    return ExitCodeResult(exit_code, severity, _message_for(exit_code))
