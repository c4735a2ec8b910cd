"""Process exit codes for the opql CLI."""

SUCCESS = 0
GENERAL_ERROR = 1
USAGE_ERROR = 2
SYNTAX_ERROR = 3
VALIDATION_ERROR = 4
DATABASE_ERROR = 5
EXECUTION_FAILURE = 6
