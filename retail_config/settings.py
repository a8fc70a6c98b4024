"""
Runtime settings read from the environment.

Every other component receives a ``Settings`` instance (or the values it
needs from one); nothing else reads ``os.environ``.
"""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_POSTING_RULES_PATH = Path(__file__).parent / "posting_rules.yaml"
DEFAULT_DATABASE_URL = "sqlite:///retail_ledger.db"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _parse_int(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    base_currency: str = "ETB"
    idempotency_lock_timeout: int = 300
    pos_gl_posting_enabled: bool = True
    posting_rules_path: Path = DEFAULT_POSTING_RULES_PATH
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: a variable is present but malformed.
        """
        env = os.environ if environ is None else environ
        settings = cls()

        currency = env.get("ACCOUNTING_BASE_CURRENCY", settings.base_currency).strip().upper()
        if len(currency) != 3:
            raise ValueError(f"ACCOUNTING_BASE_CURRENCY must be an ISO 4217 code, got {currency!r}")

        timeout = settings.idempotency_lock_timeout
        if "ACCOUNTING_IDEMPOTENCY_LOCK_TIMEOUT" in env:
            timeout = _parse_int(
                "ACCOUNTING_IDEMPOTENCY_LOCK_TIMEOUT",
                env["ACCOUNTING_IDEMPOTENCY_LOCK_TIMEOUT"],
            )

        pos_enabled = settings.pos_gl_posting_enabled
        if "POS_GL_POSTING_ENABLED" in env:
            pos_enabled = _parse_bool("POS_GL_POSTING_ENABLED", env["POS_GL_POSTING_ENABLED"])

        rules_path = env.get("POSTING_RULES_PATH")

        return cls(
            database_url=env.get("DATABASE_URL", settings.database_url),
            base_currency=currency,
            idempotency_lock_timeout=timeout,
            pos_gl_posting_enabled=pos_enabled,
            posting_rules_path=Path(rules_path) if rules_path else settings.posting_rules_path,
            log_level=env.get("LOG_LEVEL", settings.log_level).upper(),
        )
