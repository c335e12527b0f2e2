"""
Logging setup.

Logs go to stdout. Candidate records carry personal data (names, gender,
disability and diversity fields), so a filter redacts those values and any
credentials before a record is emitted.
"""

import logging
import re
import sys
from typing import Iterable, Optional

SENSITIVE_FIELDS = (
    "nome", "selecionado_nome", "selecionado_empresa_anterior",
    "genero", "selecionado_genero", "pcd", "selecionado_pcd",
    "diversidade_racial", "selecionado_diversidade_racial",
    "orientacao_sexual", "selecionado_orientacao_sexual",
    "password", "senha", "token", "authorization",
    "api_token", "bearer", "secret", "apikey", "api_key",
    "pgpassword", "pguser", "valkey_password",
)

REDACTED = "[REDACTED]"

_VALUE_PATTERNS = (
    re.compile(r"bearer\s+[a-zA-Z0-9._+/=-]+", re.IGNORECASE),
    re.compile(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b"),          # CPF
    re.compile(r"\b\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}\b"),    # CNPJ
    re.compile(r"(redis|rediss|postgres(?:ql)?(?:\+\w+)?)://[^:@/\s]+:[^@/\s]+@", re.IGNORECASE),
)


def _field_pattern(fields: Iterable[str]) -> re.Pattern:
    names = "|".join(sorted((re.escape(f) for f in fields), key=len, reverse=True))
    # 'field': 'value' / "field": "value" / field=value
    return re.compile(
        rf"""(?P<key>["']?\b(?:{names})\b["']?\s*[:=]\s*)(?P<value>"[^"]*"|'[^']*'|[^\s,}}]+)""",
        re.IGNORECASE,
    )


class SensitiveDataFilter(logging.Filter):
    """Redact personal data and credentials from log messages."""

    def __init__(self, fields: Iterable[str] = SENSITIVE_FIELDS):
        super().__init__()
        self._field_re = _field_pattern(fields)

    def redact(self, message: str) -> str:
        for pattern in _VALUE_PATTERNS:
            message = pattern.sub(REDACTED, message)
        return self._field_re.sub(lambda m: f"{m.group('key')}{REDACTED}", message)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging to stdout with redaction."""
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )
    redactor = SensitiveDataFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(redactor)

    # Quiet down chatty loggers
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
