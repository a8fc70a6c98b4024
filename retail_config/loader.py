"""
Posting-rule loader (``retail_config.loader``).

Responsibility
--------------
Loads the YAML posting-rule table and parses it into frozen dataclasses:
which GL accounts each Telebirr transaction type and each POS amount
posts to, and how the agent subledger dimension is rendered.

Architecture position
---------------------
**Config layer**.  Consumed by the orchestrators in ``retail_services``
and by the ``validate-rules`` CLI command.  May import from
``retail_kernel``; the kernel never imports from here.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass.
* Missing required keys raise ``ValueError`` naming the key; there are no
  silent defaults for account codes.
* ``validate_posting_rules`` checks once, against the chart of accounts,
  that every concrete code exists, is postable and is ACTIVE.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown / unpostable accounts  -> ``PostingRuleConfigError(errors)``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_config.settings import DEFAULT_POSTING_RULES_PATH
from retail_kernel.exceptions import PostingRuleConfigError
from retail_kernel.logging_config import get_logger
from retail_kernel.models.account import AccountStatus, GlAccount

logger = get_logger("config.posting_rules")

BANK_PLACEHOLDER = "BANK"

TELEBIRR_TX_TYPES = ("TOPUP", "ISSUE", "REPAY", "LOAN")

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class TelebirrRule:
    tx_type: str
    debit: str
    credit: str
    description: str = ""

    def resolve(self, bank_account_code: str | None = None) -> tuple[str, str]:
        """(debit_code, credit_code) with the BANK placeholder substituted."""

        def _resolve(code: str) -> str:
            if code != BANK_PLACEHOLDER:
                return code
            if not bank_account_code:
                raise PostingRuleConfigError(
                    [f"{self.tx_type} rule needs a bank account to resolve {BANK_PLACEHOLDER}"]
                )
            return bank_account_code

        return _resolve(self.debit), _resolve(self.credit)

    @property
    def uses_bank(self) -> bool:
        return BANK_PLACEHOLDER in (self.debit, self.credit)


@dataclass(frozen=True)
class SubledgerConfig:
    account_code: str
    dimension_key: str
    dimension_value_format: str

    def dimension_for(self, context: Mapping[str, Any]) -> dict[str, str]:
        return {self.dimension_key: render_dimension(self.dimension_value_format, context)}


@dataclass(frozen=True)
class PosRules:
    enabled: bool
    sales_revenue: str
    cash_receipt: str
    tax_payable: str
    discount_expense: str


@dataclass(frozen=True)
class PostingRules:
    telebirr: Mapping[str, TelebirrRule]
    subledgers: Mapping[str, SubledgerConfig]
    pos: PosRules
    source_path: str | None = None

    def telebirr_rule(self, tx_type: str) -> TelebirrRule:
        rule = self.telebirr.get(tx_type)
        if rule is None:
            raise PostingRuleConfigError([f"No posting rule for transaction type: {tx_type}"])
        return rule

    def subledger(self, name: str) -> SubledgerConfig | None:
        return self.subledgers.get(name)


def render_dimension(value_format: str, context: Mapping[str, Any]) -> str:
    """
    Substitute ``{name}`` placeholders from ``context``.

    Placeholders without a value in ``context`` are left as written.

    >>> render_dimension("SC{short_code}", {"short_code": "0042"})
    'SC0042'
    """

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in context and context[name] is not None:
            return str(context[name])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, value_format)


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in data or data[key] in (None, ""):
        raise ValueError(f"Missing required key '{key}' in {where}")
    return data[key]


def _code(value: Any) -> str:
    # YAML reads unquoted 1200 as an int
    return str(value).strip()


def parse_posting_rules(data: Mapping[str, Any], source_path: str | None = None) -> PostingRules:
    """Parse the posting-rule mapping into frozen dataclasses."""
    telebirr: dict[str, TelebirrRule] = {}
    for tx_type, rule in (data.get("telebirr") or {}).items():
        tx_type = str(tx_type).upper()
        where = f"telebirr.{tx_type}"
        telebirr[tx_type] = TelebirrRule(
            tx_type=tx_type,
            debit=_code(_require(rule, "debit", where)),
            credit=_code(_require(rule, "credit", where)),
            description=str(rule.get("description") or ""),
        )

    subledgers: dict[str, SubledgerConfig] = {}
    for name, config in (data.get("subledger") or {}).items():
        where = f"subledger.{name}"
        subledgers[str(name)] = SubledgerConfig(
            account_code=_code(_require(config, "account_code", where)),
            dimension_key=str(_require(config, "dimension_key", where)),
            dimension_value_format=str(_require(config, "dimension_value_format", where)),
        )

    pos_data = data.get("pos")
    if pos_data is None:
        raise ValueError("Missing required section 'pos'")
    pos = PosRules(
        enabled=bool(pos_data.get("enabled", True)),
        sales_revenue=_code(_require(pos_data, "sales_revenue", "pos")),
        cash_receipt=_code(_require(pos_data, "cash_receipt", "pos")),
        tax_payable=_code(_require(pos_data, "tax_payable", "pos")),
        discount_expense=_code(_require(pos_data, "discount_expense", "pos")),
    )

    return PostingRules(
        telebirr=telebirr,
        subledgers=subledgers,
        pos=pos,
        source_path=source_path,
    )


def load_posting_rules(path: Path | str | None = None) -> PostingRules:
    """
    Load the posting-rule table from YAML.

    Args:
        path: YAML file.  Defaults to the table shipped with the package.
    """
    path = Path(path) if path is not None else DEFAULT_POSTING_RULES_PATH
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    rules = parse_posting_rules(data, source_path=str(path))
    logger.info(
        "posting_rules_loaded",
        extra={
            "path": str(path),
            "telebirr_rule_count": len(rules.telebirr),
            "pos_enabled": rules.pos.enabled,
        },
    )
    return rules


def _referenced_codes(rules: PostingRules) -> list[tuple[str, str]]:
    refs: list[tuple[str, str]] = []
    for tx_type in TELEBIRR_TX_TYPES:
        if tx_type not in rules.telebirr:
            refs.append((tx_type, ""))
    for tx_type, rule in rules.telebirr.items():
        for side, code in (("Debit", rule.debit), ("Credit", rule.credit)):
            if code != BANK_PLACEHOLDER:
                refs.append((f"{side} account {code} for {tx_type}", code))
    for name, config in rules.subledgers.items():
        refs.append((f"Subledger account {config.account_code} for {name}", config.account_code))
    if rules.pos.enabled:
        for role in ("sales_revenue", "cash_receipt", "tax_payable", "discount_expense"):
            code = getattr(rules.pos, role)
            refs.append((f"POS {role} account {code}", code))
    return refs


def collect_posting_rule_errors(session: Session, rules: PostingRules) -> list[str]:
    """Every problem with the rule table against the chart of accounts."""
    errors: list[str] = []
    accounts: dict[str, GlAccount | None] = {}

    for label, code in _referenced_codes(rules):
        if not code:
            errors.append(f"No posting rule for transaction type: {label}")
            continue
        if code not in accounts:
            accounts[code] = session.execute(
                select(GlAccount).where(GlAccount.code == code)
            ).scalar_one_or_none()
        account = accounts[code]
        if account is None:
            errors.append(f"{label} not found")
        elif not account.is_postable:
            errors.append(f"{label} is not postable")
        elif account.status != AccountStatus.ACTIVE:
            errors.append(f"{label} is not active")

    return errors


def validate_posting_rules(session: Session, rules: PostingRules) -> None:
    """
    Raises:
        PostingRuleConfigError: listing every invalid reference.
    """
    errors = collect_posting_rule_errors(session, rules)
    if errors:
        logger.error("posting_rules_invalid", extra={"errors": errors})
        raise PostingRuleConfigError(errors)
    logger.info("posting_rules_valid", extra={"source_path": rules.source_path})
