from typing import Optional


class CacheError(Exception):
    """A Redis operation failed. `key` names the key (or pattern) involved, `cause` the underlying error."""

    action = "access"

    def __init__(self, key: str, cause: Optional[BaseException] = None) -> None:
        self.key = key
        self.cause = cause
        message = f"Unable to {self.action} {key}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class CacheConnectError(CacheError):
    action = "get a redis connection for"


class CacheWriteError(CacheError):
    action = "write"


class CacheReadError(CacheError):
    action = "read"


class CacheExpireError(CacheError):
    action = "set expiry of"


class CacheValueDecodeError(CacheError):
    action = "decode value of"


class CacheDeserializeError(CacheError):
    action = "deserialize value of"


class UpstreamFetchError(Exception):
    """Slack could not be reached or returned something we cannot use."""

    def __init__(self, method: str, reason: str) -> None:
        self.method = method
        self.reason = reason
        super().__init__(f"Slack {method} failed: {reason}")


class SyncError(Exception):
    """A failure that ends an `update-redis` run with a non-zero exit code."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        self.exit_code = exit_code
        super().__init__(message)
