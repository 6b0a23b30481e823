"""Standard exit codes for the Tenant Jobs CLI.

Scripts driving the CLI (cron wrappers, deployment hooks) can branch
on these codes.
"""


class ExitCode:
    """Standard exit codes for the Tenant Jobs CLI.

    These codes follow common Unix conventions where possible:
    - 0: Success
    - 1: General error
    - 130: Script terminated by Ctrl+C (SIGINT)

    Tenant Jobs codes start at 2:
    - 2: Configuration error
    - 3: Database error
    - 4: Invalid state for the requested operation
    - 5: Daemon error
    - 7: Invalid argument
    - 8: Not found
    """

    # Standard success
    SUCCESS = 0

    # General errors
    GENERAL_ERROR = 1

    # Tenant Jobs errors
    CONFIGURATION_ERROR = 2
    DATABASE_ERROR = 3
    INVALID_STATE = 4
    DAEMON_ERROR = 5
    INVALID_ARGUMENT = 7
    NOT_FOUND = 8

    # Signal-based exits (128 + signal number)
    CANCELLED = 130  # Ctrl+C (SIGINT = 2)

    _NAMES = {
        SUCCESS: ("SUCCESS", "Operation completed successfully"),
        GENERAL_ERROR: ("GENERAL_ERROR", "An unexpected error occurred"),
        CONFIGURATION_ERROR: ("CONFIGURATION_ERROR", "Configuration error or invalid config file"),
        DATABASE_ERROR: ("DATABASE_ERROR", "Database unavailable or query failed"),
        INVALID_STATE: ("INVALID_STATE", "Operation not allowed in the current state"),
        DAEMON_ERROR: ("DAEMON_ERROR", "Daemon not running or failed to start"),
        INVALID_ARGUMENT: ("INVALID_ARGUMENT", "Invalid command-line argument"),
        NOT_FOUND: ("NOT_FOUND", "Requested resource not found"),
        CANCELLED: ("CANCELLED", "Operation cancelled by user"),
    }

    @classmethod
    def get_name(cls, code: int) -> str:
        """Get the name of an exit code."""
        entry = cls._NAMES.get(code)
        return entry[0] if entry else f"UNKNOWN({code})"

    @classmethod
    def get_description(cls, code: int) -> str:
        """Get the description of an exit code."""
        entry = cls._NAMES.get(code)
        return entry[1] if entry else f"Unknown exit code: {code}"
