from __future__ import annotations

import logging
import os
from typing import Iterable, List


SENSITIVE_ENV_VARS: Iterable[str] = ("ADMIN_TOKEN",)


def _secret_values() -> List[str]:
    secrets = [str(os.getenv(k) or "") for k in SENSITIVE_ENV_VARS]
    for k, v in os.environ.items():
        if k.endswith("_TOKEN") and v and v not in secrets:
            secrets.append(str(v))
    return [s for s in secrets if s]


class RedactSecretsFilter(logging.Filter):
    """Replaces configured token values in log records with ***."""

    def __init__(self, name: str = "") -> None:
        super().__init__(name)
        self._secrets = _secret_values()

    def _redact_text(self, text: str) -> str:
        for s in self._secrets:
            text = text.replace(s, "***")
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        if record.args:
            # uvicorn.access formats a fixed-size tuple; redact elements in place
            if isinstance(record.args, dict):
                record.args = {
                    k: (self._redact_text(v) if isinstance(v, str) else v) for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(self._redact_text(a) if isinstance(a, str) else a for a in record.args)
            if isinstance(record.msg, str):
                record.msg = self._redact_text(record.msg)
        else:
            record.msg = self._redact_text(str(record.getMessage()))
            record.args = ()
        return True
