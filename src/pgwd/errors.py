# src/pgwd/errors.py

"""
Error taxonomy for pgwd.

ConfigError     -> fatal before any network activity (exit 2)
BootstrapError  -> fatal, tunnel released first (exit 1; BootstrapCancelled exits 0)
ConnectError    -> database unreachable, optional connect-failure alert (exit 1)
KubectlError / NotificationError -> per-cycle, logged and skipped
"""

from typing import Dict, Optional


class WatchdogError(Exception):
    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigError(WatchdogError):
    pass


class MalformedReference(ConfigError):
    pass


class NoThresholdsConfigured(ConfigError):
    pass


class BootstrapError(WatchdogError):
    pass


class KubectlNotFound(BootstrapError):
    pass


class NoBackingInstance(BootstrapError):
    pass


class SelectorEmpty(BootstrapError):
    pass


class CredentialNotFound(BootstrapError):
    pass


class TunnelNotReady(BootstrapError):
    pass


class BootstrapCancelled(BootstrapError):
    """Stop was requested while the tunnel was starting."""


class KubectlError(WatchdogError):
    """A kubectl invocation exited non-zero."""


class NotificationError(WatchdogError):
    pass


TOO_MANY_CLIENTS_SQLSTATE = '53300'


class ConnectError(WatchdogError):
    """
    Raised when the database pool cannot be opened.

    `too_many_clients` is a deliberately narrow heuristic: the server rejected
    us because max_connections is exhausted. asyncpg exposes the SQLSTATE on
    server errors; anything else (wrapped driver errors, proxies) only leaves
    the message text, so both are checked.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None,
                 details: Optional[Dict] = None):
        super().__init__(message, details)
        self.cause = cause

    @property
    def too_many_clients(self) -> bool:
        if self.cause is None:
            return False
        if getattr(self.cause, 'sqlstate', None) == TOO_MANY_CLIENTS_SQLSTATE:
            return True
        text = str(self.cause)
        return 'too many clients' in text or TOO_MANY_CLIENTS_SQLSTATE in text
