class UpgradeError(Exception):
    """Base class for failures while publishing or upgrading a policy-governed package."""


class KeyNotFound(UpgradeError):
    """Raised when the active address is unknown or no keystore entry derives to it."""


class BuildFailure(UpgradeError):
    """Raised when the package build fails or emits malformed output."""


class PolicyRejected(UpgradeError):
    """Raised when the upgrade policy predicate refuses an authorization."""


class InvalidCapability(UpgradeError):
    """Raised when an upgrade capability is not fresh or was already consumed."""


class TicketOutstanding(UpgradeError):
    """Raised when authorizing while another upgrade ticket is still pending."""


class TicketMismatch(UpgradeError):
    """Raised when a ticket or receipt does not belong to the pending authorization."""


class DigestMismatch(UpgradeError):
    """Raised when the upgraded code does not match the authorized digest."""


class NetworkFailure(UpgradeError):
    """Raised when a round trip to the RPC endpoint fails."""


class TransactionFailed(UpgradeError):
    """Raised when the execution layer rejects a transaction for any other reason."""


class InsufficientGas(UpgradeError):
    """Raised when the sender does not own enough gas to cover the budget."""
