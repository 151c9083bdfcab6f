"""
errors.py — Exception taxonomy for ggufherd

Library code raises these; the CLI catches GGUFError, logs the message
and exits with status 1. HTTP failures from the model server are not
exceptions — see server_api.RequestFailed.
"""


class GGUFError(Exception):
    """Base class for every handled ggufherd failure."""


class NotFound(GGUFError):
    """A slug is not in the catalog, or an expected file is missing."""


class NotRunning(NotFound):
    """No server process matches the requested model."""


class Conflict(GGUFError):
    """A slug or the server port is already taken."""


class InvalidInput(GGUFError):
    """Malformed user input, e.g. a bad HuggingFace model id."""


class StartupTimeout(GGUFError):
    """The server did not accept connections within the startup window."""

    def __init__(self, seconds: float, log_file=None):
        self.seconds = seconds
        self.log_file = log_file
        msg = f"Server failed to start within {seconds:.0f} seconds."
        if log_file:
            msg += f" Check logs: {log_file}"
        super().__init__(msg)
