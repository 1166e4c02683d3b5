"""Exceptions raised by nodeforge."""


class NodeforgeError(Exception):
    """Base class for all nodeforge errors."""
    pass


class ConfigurationError(NodeforgeError):
    """Raised when configuration cannot be loaded or rendered."""
    pass


class ComponentError(NodeforgeError):
    """Raised for malformed or unsupported component state."""
    pass


class UnsupportedVersionError(ComponentError):
    """Raised when a component version has no matching code path."""

    def __init__(self, kind: str, version: str):
        self.kind = kind
        self.version = version
        super().__init__(f"{kind} does not support version: {version}")


class RegistryNotFoundError(NodeforgeError):
    """Raised by a cluster store when a named registry does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"registry {name} not found")


class RegistryLookupError(NodeforgeError):
    """Raised when registry resolution fails for any reason other than not-found."""
    pass


class ContainerNotFoundError(NodeforgeError):
    """Raised by a container client when a container or task has gone away."""
    pass


class TeardownError(NodeforgeError):
    """Raised when a running task cannot be killed during teardown."""
    pass


class CommandError(NodeforgeError):
    """Raised when a local command exits with a non-zero status."""

    def __init__(self, args, returncode: int, output: str = ""):
        self.cmd = list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(f"command {' '.join(self.cmd)} failed with status {returncode}: {output.strip()}")


class DownloadError(NodeforgeError):
    """Raised when a component package cannot be fetched or unpacked."""
    pass


class OperationCancelled(NodeforgeError):
    """Raised when an in-flight install or uninstall is cancelled."""
    pass
