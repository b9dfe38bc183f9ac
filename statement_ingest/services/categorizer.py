"""Rule-based transaction categorization.

The rule lists below are ORDERED and the order is load-bearing: the first
matching rule wins, and overlapping keywords are resolved by position
rather than by specificity. Do not sort them or turn them into a dict.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from statement_ingest.models import TaxCategory, coerce_category

logger = logging.getLogger(__name__)

# Confidence assigned whenever a rule, not a provider, picked the category
RULE_CONFIDENCE = 0.5

Predicate = Callable[[str], bool]


def _any_of(*keywords: str) -> Predicate:
    """Case-insensitive substring predicate over a lowercased description."""
    return lambda lower: any(keyword in lower for keyword in keywords)


INCOME_RULES: list[tuple[Predicate, TaxCategory]] = [
    (_any_of("salary", "payroll", "net pay"), TaxCategory.SALARY),
    (_any_of("revenue", "sales", "payment from", "invoice"), TaxCategory.BUSINESS_REVENUE),
    (_any_of("fiverr", "upwork", "freelance", "gig"), TaxCategory.FREELANCE_INCOME),
    (_any_of("dividend", "interest", "investment"), TaxCategory.OTHER_INCOME),
]
INCOME_DEFAULT = TaxCategory.OTHER_INCOME

EXPENSE_RULES: list[tuple[Predicate, TaxCategory]] = [
    (_any_of("uber", "bolt", "transport", "fuel", "filling station"), TaxCategory.TRANSPORTATION),
    (_any_of("restaurant", "eatery", "food", "canteen", "kitchen"), TaxCategory.FOOD),
    (_any_of("rent", "lease", "office space"), TaxCategory.RENT),
    (
        _any_of("mtn", "glo", "airtime", "data", "spectranet", "smile", "internet"),
        TaxCategory.UTILITIES,
    ),
    (
        _any_of("sms fee", "maintenance fee", "stamp duty", "levy", "card maintenance", "bank charge"),
        TaxCategory.BANK_CHARGES,
    ),
    (_any_of("firs", "lirs", "tax", "wht", "withholding", "vat"), TaxCategory.TAX_PAYMENTS),
    (
        _any_of("aws", "google cloud", "netflix", "spotify", "zoom", "microsoft", "subscription"),
        TaxCategory.SUBSCRIPTIONS,
    ),
    (_any_of("pension", "pencom"), TaxCategory.PENSION_CONTRIBUTIONS),
    (_any_of("nhf", "housing fund"), TaxCategory.NHF_CONTRIBUTIONS),
    (
        _any_of("legal", "consultant", "audit", "accounting", "professional fee"),
        TaxCategory.PROFESSIONAL_FEES,
    ),
    (_any_of("repair", "maintenance", "servicing", "fix"), TaxCategory.MAINTENANCE),
    (_any_of("medical", "hospital", "pharmacy", "health", "tests"), TaxCategory.HEALTH),
    (_any_of("charity", "donation", "gift", "offering", "tithe"), TaxCategory.DONATIONS),
]
# Never "miscellaneous": downstream deduction logic keys off business expenses
EXPENSE_DEFAULT = TaxCategory.BUSINESS_EXPENSES


@dataclass(frozen=True)
class ImportRule:
    """A user-supplied keyword -> category override."""

    keyword: str
    category: TaxCategory


_RULE_SPLIT_RE = re.compile(r"\s*(?:->|=>|:|=)\s*")


def parse_import_rules(text: str | None) -> list[ImportRule]:
    """
    Parse free-text user mappings into ordered override rules.

    Accepts one rule per line (or ';'-separated), e.g.::

        shoprite -> food
        "Ikeja Electric" => utilities
        church: donations

    Lines that don't name a known category are skipped.
    """
    if not text:
        return []

    rules: list[ImportRule] = []
    for raw_line in re.split(r"[\n;]", text):
        line = raw_line.strip().lstrip("-*• ").strip()
        if not line:
            continue

        parts = _RULE_SPLIT_RE.split(line, maxsplit=1)
        if len(parts) != 2:
            logger.warning(f"Ignoring import rule without a separator: '{line}'")
            continue

        keyword = parts[0].strip().strip("'\"").lower()
        category = coerce_category(parts[1].strip().strip("'\"."))
        if not keyword or category is None:
            logger.warning(f"Ignoring import rule with unknown category: '{line}'")
            continue

        rules.append(ImportRule(keyword=keyword, category=category))

    return rules


def categorize(
    description: str,
    is_income: bool,
    overrides: list[ImportRule] | None = None,
) -> TaxCategory:
    """
    Map a description and direction onto a tax category.

    User overrides are checked first, then the built-in ordered rules.
    Pure and deterministic: same input, same category.
    """
    lower = (description or "").lower()

    for rule in overrides or []:
        if rule.keyword in lower:
            return rule.category

    rules, default = (INCOME_RULES, INCOME_DEFAULT) if is_income else (EXPENSE_RULES, EXPENSE_DEFAULT)
    for predicate, category in rules:
        if predicate(lower):
            return category

    return default


def resolve_category(
    raw_category: str | None,
    description: str,
    is_income: bool,
    overrides: list[ImportRule] | None = None,
) -> tuple[TaxCategory, bool]:
    """
    Resolve a provider-suggested category against the taxonomy.

    Returns (category, patched) where patched is True when the rules had
    to fill in because the suggestion was missing or unknown.
    """
    for rule in overrides or []:
        if rule.keyword in (description or "").lower():
            return rule.category, False

    category = coerce_category(raw_category)
    if category is not None:
        return category, False

    return categorize(description, is_income, overrides), True
