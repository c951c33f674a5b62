"""Exception hierarchy shared by the channels, containers, retention and service."""

from typing import List


class HoldfastError(Exception):
    """Base class for every error this package raises on purpose."""

    message = "Unexpected holdfast error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.message)


# ==========================================
# Container / terminal protocol
# ==========================================

class ContainerError(HoldfastError):
    pass


class ProcessNotRunning(ContainerError):
    message = "Container process didn't start successfully, or has died"


class DockerConnectPermissionError(ContainerError):
    message = "Docker was blocked from accessing docker.sock, make sure UID/GID are set correctly"


class PauseFailed(ContainerError):
    message = "Server container failed to pause autosave before timeout was reached"


class SaveNotCompleted(ContainerError):
    message = "Server container failed to flush data to disk before timeout was reached"


class ResumeFailed(ContainerError):
    message = "Server container failed to resume autosave before timeout was reached"


class HoldNotFound(ContainerError):
    message = "No hold marker exists for this container, nothing to clean up"


class BackupsFailed(ContainerError):
    def __init__(self, failed: List[str]):
        self.failed = list(failed)
        super().__init__(
            "Server container had worlds that failed to backup: " + ", ".join(self.failed)
        )


class InvalidExtrasArchive(ContainerError):
    message = "Could not create ZIP archive for extras"


# ==========================================
# Transport
# ==========================================

class TransportError(HoldfastError):
    pass


class ChannelNotConnected(TransportError):
    message = "Terminal channel is not connected"


class AuthenticationFailed(TransportError):
    message = "Remote console rejected the supplied credentials"


class HostKeyChanged(TransportError):
    def __init__(self, host_ident: str):
        self.host_ident = host_ident
        super().__init__(f"Host key for {host_ident} has changed since it was first recorded")


class UnsupportedChannelType(TransportError):
    message = "Remote side opened an unsupported channel type"


# ==========================================
# Configuration
# ==========================================

class ConfigError(HoldfastError):
    pass


class InvalidAddress(ConfigError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Invalid address '{address}', expected host:port")


class MissingCredential(ConfigError):
    def __init__(self, container: str, kind: str):
        super().__init__(
            f"Container {container} is configured for {kind}, but no password or password file was set"
        )


class InvalidSyntax(ConfigError):
    def __init__(self, value: str, what: str):
        super().__init__(f"Unable to parse {what}: '{value}'")


# ==========================================
# Worlds / retention / service
# ==========================================

class WorldError(HoldfastError):
    pass


class TrimmingError(HoldfastError):
    pass


class ServiceError(HoldfastError):
    pass
