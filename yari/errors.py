"""Error types shared across the step loop and the tool registry."""


class YariError(Exception):
    """Base class for all yari errors."""


class ModelCapabilityError(YariError):
    """The model call itself failed (upstream outage, timeout, bad response).

    Fatal for the current run: the loop stops and returns what it has.
    """

    def __init__(self, message: str, model: str | None = None):
        super().__init__(message)
        self.model = model


class ToolValidationError(YariError):
    """Tool input did not match the tool's input schema."""


class ToolExecutionError(YariError):
    """Tool executor raised or timed out."""


class ToolOutputError(YariError):
    """Tool executor returned a value that breaks its own output schema."""
