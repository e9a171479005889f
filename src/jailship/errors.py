"""Domain errors for jailship."""


class JailshipError(RuntimeError):
    """Raised when a deployment operation cannot continue safely."""


class ConfigError(JailshipError):
    """Raised when the deploy configuration is missing or invalid."""


class SecretsError(JailshipError):
    """Raised when encrypted secrets cannot be read, written or merged."""


class SSHConnectionError(JailshipError):
    """Raised when the SSH session to the server cannot be opened."""

    def __init__(self, message: str, code: str = "connection_failed"):
        super().__init__(message)
        self.code = code


class CommandError(JailshipError):
    """Raised when a remote command exits with a non-zero status."""

    OUTPUT_LIMIT = 500

    def __init__(self, command: str, exit_code: int, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output

        excerpt = output[: self.OUTPUT_LIMIT]
        if len(output) > self.OUTPUT_LIMIT:
            excerpt = f"{excerpt}\n... (output truncated)"
        super().__init__(f"Command failed (exit {exit_code}): {command}\nOutput: {excerpt}")


class TransferError(JailshipError):
    """Raised when a file upload is not confirmed by the remote side."""


class HealthCheckError(JailshipError):
    """Raised when a freshly started jail never answers its health check."""
