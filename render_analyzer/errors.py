"""Exception hierarchy for the trace loading and configuration boundary."""


class RenderAnalyzerError(Exception):
    """Base error carrying a stable code for programmatic handling."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class TraceNotFoundError(RenderAnalyzerError):
    code = "TRACE_NOT_FOUND"

    def __init__(self, path: str):
        super().__init__(f"Trace file not found: {path}")
        self.path = path


class TraceParseError(RenderAnalyzerError):
    code = "TRACE_PARSE_FAILED"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to parse trace {path}: {reason}")
        self.path = path
        self.reason = reason


class InvalidTraceFormatError(RenderAnalyzerError):
    code = "INVALID_TRACE_FORMAT"


class ConfigError(RenderAnalyzerError):
    code = "CONFIG_INVALID"
