"""Custom exceptions for the provisioner."""


class ProvisionerError(Exception):
    """Base exception for all provisioner errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(ProvisionerError):
    """Exception raised for invalid or missing configuration."""

    pass


class RegistryError(ConfigurationError):
    """Exception raised when the node list cannot form a valid registry."""

    pass


class DependencyError(ConfigurationError):
    """Exception raised when a required binary is not installed."""

    pass


class TalosError(ProvisionerError):
    """Exception raised for talosctl failures."""

    pass


class KubernetesError(ProvisionerError):
    """Exception raised for Kubernetes API errors."""

    pass


class WorkflowError(ProvisionerError):
    """Base exception for provisioning workflow progress failures."""

    pass


class WorkflowFailedError(WorkflowError):
    """A workflow reached the failed state."""

    pass


class WorkflowStalledError(WorkflowError):
    """Workflows made no progress for too many consecutive polls."""

    pass


class WorkflowTimeoutError(WorkflowError):
    """Workflows did not complete before the hard timeout."""

    pass


class ConfigApplyError(ProvisionerError):
    """Machine configuration could not be applied to any node."""

    pass


class BootstrapError(ProvisionerError):
    """Exception raised when the cluster cannot be bootstrapped."""

    pass


class CredentialsError(BootstrapError):
    """Cluster credentials could not be retrieved or persisted."""

    pass


class ResetJobError(ProvisionerError):
    """The delegated reset job failed or timed out."""

    pass
