# src/testrelay/exceptions.py

"""
Custom exception hierarchy for testrelay.
"""


class TestRelayError(Exception):
    """Base class for all testrelay errors."""

    __test__ = False


class ConfigurationError(TestRelayError):
    """Raised when the configuration file is missing, malformed or invalid."""

    pass


class AnalysisError(TestRelayError):
    """Raised when the analysis collaborator fails to answer a request."""

    pass


class ResolutionError(AnalysisError):
    """The analysis collaborator could not turn a selection into commands."""

    def __init__(self, message: str, workspace: str | None = None):
        self.workspace = workspace
        full_message = message
        if workspace:
            full_message += f" (Workspace: '{workspace}')"
        super().__init__(full_message)


class SpawnError(TestRelayError):
    """A test process, terminal or debugger session could not be started."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        details: Exception | None = None,
    ):
        self.command = command
        self.details = details
        full_message = message
        if command:
            full_message += f" (Command: '{command}')"
        super().__init__(full_message)
        if details and hasattr(self, "add_note"):
            self.add_note(f"Original error: {type(details).__name__}: {details}")


class ProtocolError(TestRelayError):
    """
    A message on the event channel could not be framed or decoded.

    ``recoverable`` is False when the stream position is lost and nothing more can be read from it.
    """

    def __init__(self, message: str, recoverable: bool = True):
        self.recoverable = recoverable
        super().__init__(message)


class UnmatchedIdWarning(TestRelayError):
    """An event id could not be resolved against the test hierarchy."""

    def __init__(self, test_id: str, uri: str | None = None):
        self.test_id = test_id
        self.uri = uri
        super().__init__(f"No test item matches id '{test_id}' (uri: {uri})")


class CoverageError(TestRelayError):
    """The coverage artifact could not be read or converted."""

    pass


class RunTimeoutError(TestRelayError, TimeoutError):
    """A non-streaming request exceeded its deadline."""

    pass


# 🔼⚙️
