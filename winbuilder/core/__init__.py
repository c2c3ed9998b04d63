from winbuilder.core.exceptions import (
    ArchiveError,
    BuildCancelled,
    BuilderError,
    ConfigurationError,
    DecodeError,
    DeletionError,
    FirewallError,
    HandshakeError,
    HandshakeTimeout,
    InstanceLookupError,
    NonZeroExitError,
    OperationFailedError,
    OperationTimeout,
    PollTimeout,
    ProvisioningError,
    StorageError,
    TransportError,
)

__all__ = [
    "ArchiveError",
    "BuildCancelled",
    "BuilderError",
    "ConfigurationError",
    "DecodeError",
    "DeletionError",
    "FirewallError",
    "HandshakeError",
    "HandshakeTimeout",
    "InstanceLookupError",
    "NonZeroExitError",
    "OperationFailedError",
    "OperationTimeout",
    "PollTimeout",
    "ProvisioningError",
    "StorageError",
    "TransportError",
]
