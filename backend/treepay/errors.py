class ConfigurationError(RuntimeError):
    """The deployment is not ready to accept webhooks (missing secret, workspace id...)."""


class WebhookRejected(Exception):
    """A delivery was malformed or did not match the ledger.

    Terminal for the delivery, reported back to the provider as
    ``{"success": false, "message": ...}`` rather than as a server fault.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TreeCodeConflict(RuntimeError):
    """Another writer claimed the same tree code first."""
