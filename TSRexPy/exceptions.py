"""Custom exceptions for TSRexPy."""


class TSRexPyError(Exception):
    """Base exception for all TSRexPy errors."""

    pass


class ConfigurationError(TSRexPyError):
    """Raised when a parameter, column reference or config file is invalid."""

    pass


class DataIntegrityError(TSRexPyError):
    """Raised when TSS/TSR tables violate an invariant of the data model.

    Duplicate TSS keys, TSRs without members and TSSs mapped to more than
    one TSR all end up here. These point at a defect upstream and are
    never retried.
    """

    pass


class CollaboratorContractViolation(TSRexPyError):
    """Raised when an external collaborator returns an unreconcilable table."""

    def __init__(self, message="", collaborator=None, expected=None, received=None):
        """Initialize with optional details about the mismatch.

        Args:
            message: Error message
            collaborator: Name of the collaborator (annotation, normalization, ...)
            expected: What the core expected back (row count, shape, ids)
            received: What the collaborator actually returned
        """
        super().__init__(message)
        self.collaborator = collaborator
        self.expected = expected
        self.received = received
