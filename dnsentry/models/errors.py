"""Exception hierarchy for dnsentry."""


class DNSEntryError(Exception):
    """Base exception for dnsentry."""


class ValidationError(DNSEntryError):
    """Raised when an entry spec is invalid."""


class EntryReferenceError(ValidationError):
    """Raised when an entry reference cannot be completed."""


class AccessDeniedError(DNSEntryError):
    """Raised when an object may not use another object."""


class OwnerError(DNSEntryError):
    """Raised when an entry is owned by an unknown owner id."""


class HostLookupError(DNSEntryError):
    """Raised when a host name cannot be resolved to any address."""


class LockCancelledError(DNSEntryError):
    """Raised when an entry lock acquisition was aborted."""


class NotFoundError(DNSEntryError):
    """Raised when a stored object does not exist."""


class ConflictError(DNSEntryError):
    """Raised when an optimistic status update kept conflicting."""


class ProviderError(DNSEntryError):
    """Raised when a DNS provider handler fails."""
