"""
retail_config -- runtime settings and the posting-rule table.

``Settings.from_env()`` is the only reader of environment variables;
``load_posting_rules()`` the only reader of the YAML rule table.
"""

from retail_config.loader import (
    BANK_PLACEHOLDER,
    PosRules,
    PostingRules,
    SubledgerConfig,
    TelebirrRule,
    collect_posting_rule_errors,
    load_posting_rules,
    parse_posting_rules,
    render_dimension,
    validate_posting_rules,
)
from retail_config.settings import Settings

__all__ = [
    "BANK_PLACEHOLDER",
    "PosRules",
    "PostingRules",
    "Settings",
    "SubledgerConfig",
    "TelebirrRule",
    "collect_posting_rule_errors",
    "load_posting_rules",
    "parse_posting_rules",
    "render_dimension",
    "validate_posting_rules",
]
