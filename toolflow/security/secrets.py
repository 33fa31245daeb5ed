"""
Secret value masking.

Every credential value injected into a provider launch is registered here
so it can be replaced with '***' in log records, emitted events and
persisted execution state. Masking is best-effort substring replacement.
"""

import logging
import re
import threading
from typing import Any, Iterable, Set


MASK = "***"


class SecretsManager:
    """
    Registry of secret values to mask.

    Values are tracked for the lifetime of the process; nothing is ever
    written to disk by this class.
    """

    def __init__(self):
        """Initialize secrets manager."""
        self._masked_values: Set[str] = set()
        self._lock = threading.Lock()

    def register(self, values: Iterable[str]) -> None:
        """
        Track values for masking.

        Args:
            values: Secret values (empty strings are ignored)
        """
        with self._lock:
            for value in values:
                if value:
                    self._masked_values.add(value)

    def mask_text(self, text: str) -> str:
        """
        Mask known secret values in text.

        Args:
            text: Text potentially containing secrets

        Returns:
            Text with secrets masked
        """
        if not text or not self._masked_values:
            return text

        with self._lock:
            values = sorted(self._masked_values, key=len, reverse=True)

        masked = text
        # Longest first so a secret containing another is masked whole
        for secret_value in values:
            if secret_value in masked:
                masked = re.sub(re.escape(secret_value), MASK, masked)
        return masked

    def mask_value(self, data: Any) -> Any:
        """
        Recursively mask secrets in JSON-like data (for state and events).

        Args:
            data: Strings, dicts, lists or scalars

        Returns:
            A masked copy; non-string scalars are returned unchanged
        """
        if not self._masked_values:
            return data
        if isinstance(data, str):
            return self.mask_text(data)
        if isinstance(data, dict):
            return {key: self.mask_value(value) for key, value in data.items()}
        if isinstance(data, (list, tuple)):
            return [self.mask_value(item) for item in data]
        return data

    def clear_masked_values(self):
        """Clear the set of values to mask (useful for testing)."""
        with self._lock:
            self._masked_values.clear()


class SecretsMaskingFilter(logging.Filter):
    """Logging filter that masks registered secrets in the rendered message."""

    def __init__(self, secrets_manager: SecretsManager):
        super().__init__()
        self.secrets_manager = secrets_manager

    def filter(self, record: logging.LogRecord) -> bool:
        # Render once so secrets split across msg and args are still caught
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        masked = self.secrets_manager.mask_text(message)
        if masked != message or record.args:
            record.msg = masked
            record.args = None
        return True
