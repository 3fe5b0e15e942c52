class TryOnError(Exception):
    """Base exception for the try-on broker.

    ``status_code`` is the HTTP status the global handler answers with.
    """

    status_code: int = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class InvalidInput(TryOnError):
    """Raised when a request is rejected before any side effect."""

    status_code = 400


class NoProviderAvailable(TryOnError):
    """Raised when no provider is both enabled and active."""

    status_code = 503


class ProviderDisabled(TryOnError):
    """Raised when an explicitly requested provider is not enabled."""

    status_code = 409

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Provider '{provider}' is not enabled")


class ProviderCallFailed(TryOnError):
    """Raised when a single provider attempt fails."""

    status_code = 502

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} failed: {reason}")


class ProviderTimeout(ProviderCallFailed):
    """Raised when a provider exceeds its configured timeout."""

    def __init__(self, provider: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(provider, f"timed out after {timeout_seconds:g}s")


class OutputExtractionFailed(ProviderCallFailed):
    """Raised when no extraction strategy yields a result locator."""

    def __init__(self, provider: str, output_type: str):
        self.output_type = output_type
        super().__init__(provider, f"could not extract a result locator from {output_type} output")


class AllProvidersFailed(TryOnError):
    """Raised when every candidate provider failed for a request."""

    status_code = 502

    def __init__(self, attempts: list[ProviderCallFailed]):
        self.attempts = attempts
        self.last_error = attempts[-1] if attempts else None
        tried = ", ".join(a.provider for a in attempts) or "none"
        super().__init__(f"All providers failed (tried: {tried})")


class AccountNotFound(TryOnError):
    """Raised when an account id does not exist."""

    status_code = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class NoBalance(TryOnError):
    """Raised when an account has neither free trials nor credits left."""

    status_code = 402

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__("No free trials or credits remaining. Top up credits to continue.")


class AccountLockTimeout(TryOnError):
    """Raised when the per-account lock cannot be acquired in time."""

    status_code = 503

    def __init__(self, account_id: str, waited_seconds: float):
        self.account_id = account_id
        self.waited_seconds = waited_seconds
        super().__init__(f"Account {account_id} is busy, retry shortly")


class LedgerInconsistency(TryOnError):
    """Raised when ledger entries and the stored balance disagree."""

    status_code = 500

    def __init__(self, account_id: str, detail: str):
        self.account_id = account_id
        self.detail = detail
        super().__init__(f"Ledger inconsistency for account {account_id}: {detail}")


class InvalidSignature(TryOnError):
    """Raised when a webhook payload fails signature verification."""

    status_code = 400


class MalformedEvent(TryOnError):
    """Raised when a verified webhook event lacks usable account or credit data."""

    status_code = 200


class DuplicateEvent(TryOnError):
    """Raised when a webhook order id has already been credited."""

    status_code = 200

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order already processed: {order_id}")


class ConcurrentBalanceUpdate(TryOnError):
    """Raised when a guarded balance update keeps losing to concurrent writers."""

    status_code = 503

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Balance for account {account_id} changed concurrently, retry shortly")
