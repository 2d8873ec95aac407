class ConversionError(Exception):
    """Base for every failure a conversion job can end with."""


class ToolInvocationError(ConversionError):
    """An external tool could not be spawned or exited non-zero."""

    def __init__(self, message: str, stderr: str = "", exit_code: int | None = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class ToolTimeoutError(ToolInvocationError):
    pass


class MissingArtifactError(ToolInvocationError):
    """The tool reported success but the expected output file is not on disk."""


class ExtractionError(ConversionError):
    pass


class UpstreamBlockedError(ExtractionError):
    pass


class CredentialStoreError(ExtractionError):
    pass


class CredentialDatabaseNotFoundError(ExtractionError):
    pass


class UpstreamPreconditionError(ExtractionError):
    pass


class SeparationUnavailableError(ConversionError):
    pass
