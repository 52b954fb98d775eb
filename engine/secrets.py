"""
Loan Harness - Secret Redaction

Every run generates a fresh mnemonic that has to reach the loan CLI
through its environment. That value is registered here for the lifetime
of the run so that nothing the harness logs or returns about a CLI
invocation ever contains it.

Secrets are NEVER logged or written into invocation records. The
mnemonic is still part of the persisted TestResult (operators need it to
recover test funds); that record is the only place it lands.

Usage:
    from engine.secrets import get_registry, redact

    with get_registry().scoped(mnemonic):
        logger.info("Executing %s", redact(command_line))
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger("loan_harness.secrets")

MASK = "****"


class SecretRegistry:
    """
    Thread-safe set of live secret values.

    Registration is reference-counted so two runs that happen to share a
    value do not unregister each other.
    """

    def __init__(self):
        self._secrets: dict[str, int] = {}
        self._lock = threading.Lock()

    def register(self, value: str) -> None:
        if not value:
            return
        with self._lock:
            self._secrets[value] = self._secrets.get(value, 0) + 1

    def unregister(self, value: str) -> None:
        with self._lock:
            count = self._secrets.get(value, 0)
            if count <= 1:
                self._secrets.pop(value, None)
            else:
                self._secrets[value] = count - 1

    @contextmanager
    def scoped(self, value: str) -> Iterator[str]:
        """Register a secret for the duration of a block."""
        self.register(value)
        try:
            yield value
        finally:
            self.unregister(value)

    def redact(self, text: str) -> str:
        """Mask every registered secret in text. Longest values first."""
        if not text:
            return text
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            if secret in text:
                text = text.replace(secret, MASK)
        return text

    def __contains__(self, value: str) -> bool:
        with self._lock:
            return value in self._secrets

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()


def safe_url(url: str) -> str:
    """Mask the password of a URL or DSN for logging."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", f":{MASK}@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


# ═══════════════════════════════════════════════════════════════════
# Module-level convenience
# ═══════════════════════════════════════════════════════════════════

_default_registry: SecretRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> SecretRegistry:
    """Get the process-wide SecretRegistry."""
    global _default_registry
    with _registry_lock:
        if _default_registry is None:
            _default_registry = SecretRegistry()
    return _default_registry


def redact(text: str) -> str:
    """Mask registered secrets using the process-wide registry."""
    return get_registry().redact(text)


def reset_registry():
    """Reset the process-wide registry (for testing)."""
    global _default_registry
    with _registry_lock:
        _default_registry = None
