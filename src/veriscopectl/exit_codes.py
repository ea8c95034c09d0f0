"""Process exit codes shared by every ``veriscopectl`` command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    ``OK`` is also used when the operator declines a confirmation gate, since a
    declined destructive action leaves the deployment untouched.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    INTEGRITY = 5
    RECONCILIATION = 6
